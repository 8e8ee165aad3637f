from __future__ import annotations

from datetime import UTC, datetime, timedelta
import logging
import re
from unittest.mock import Mock, call

import pytest

from harvester_auto_backup.config import ConfigurationError
from harvester_auto_backup.k8s import HarvesterApiError, KubernetesDiscoveryError
from harvester_auto_backup.models import BackupRecord, RetentionOffset, VirtualMachineRef
from harvester_auto_backup.orchestrator import (
    MAX_BACKUP_NAME_LENGTH,
    BackupCreationError,
    BackupDeletionError,
    BackupOrchestrator,
    OrchestratorConfig,
    backup_name_for,
)

_NOW = datetime(2024, 6, 30, 12, 0, 0, tzinfo=UTC)


def _record(vm_name: str, days_old: int, *, namespace: str = "vms") -> BackupRecord:
    return BackupRecord(
        namespace=namespace,
        name=f"{vm_name}-{days_old}d",
        created_at=_NOW - timedelta(days=days_old),
        vm_name=vm_name,
    )


def _orchestrator(collaborator: Mock, *, dry_run: bool = False, namespace: str | None = None) -> BackupOrchestrator:
    return BackupOrchestrator(
        collaborator=collaborator,
        config=OrchestratorConfig(
            label="auto-backup",
            namespace=namespace,
            dry_run=dry_run,
            weekly_boundary_offset=RetentionOffset(14, "days"),
            monthly_boundary_offset=RetentionOffset(60, "days"),
            delete_boundary_offset=RetentionOffset(365, "days"),
        ),
        clock=lambda: _NOW,
    )


def _collaborator(machines: list[VirtualMachineRef], backups: dict[str, list[BackupRecord]]) -> Mock:
    collaborator = Mock()
    collaborator.list_virtual_machines.return_value = machines
    collaborator.list_backups.side_effect = lambda namespace, vm_name: list(backups.get(vm_name, []))
    return collaborator


def test_run_with_no_matching_vms_reports_empty_summary() -> None:
    collaborator = _collaborator([], {})

    summary = _orchestrator(collaborator, namespace="vms").run()

    assert summary.no_matching_vms is True
    assert summary.backups_created == 0
    assert summary.backups_deleted == 0
    assert summary.results == []
    collaborator.list_virtual_machines.assert_called_once_with("auto-backup", "vms")
    collaborator.create_backup.assert_not_called()
    collaborator.delete_backup.assert_not_called()


def test_run_with_discovery_failure_propagates_discovery_error() -> None:
    collaborator = Mock()
    collaborator.list_virtual_machines.side_effect = KubernetesDiscoveryError("cluster unreachable")

    with pytest.raises(KubernetesDiscoveryError, match="cluster unreachable"):
        _orchestrator(collaborator).run()


def test_run_with_backup_failure_for_one_vm_still_processes_the_next() -> None:
    machines = [VirtualMachineRef("vms", "x"), VirtualMachineRef("vms", "y")]
    collaborator = _collaborator(
        machines,
        {
            "x": [_record("x", 400)],
            "y": [_record("y", 1), _record("y", 400)],
        },
    )

    def create_backup(namespace: str, vm_name: str, backup_name: str) -> None:
        if vm_name == "x":
            raise HarvesterApiError(operation="create VirtualMachineBackup", reason="API status 409 (Conflict)")

    collaborator.create_backup.side_effect = create_backup

    summary = _orchestrator(collaborator).run()

    assert summary.vms_processed == 2
    assert summary.creation_failures == 1
    assert summary.backups_created == 1
    assert summary.backups_deleted == 1
    x_result, y_result = summary.results
    assert x_result.status == "backup_failed"
    assert "create stage failed" in x_result.message
    assert x_result.planned_deletions == ()
    assert y_result.status == "done"
    assert y_result.deleted == (_record("y", 400),)
    collaborator.list_backups.assert_called_once_with("vms", "y")
    collaborator.delete_backup.assert_called_once_with("vms", "y-400d")


def test_run_with_listing_failure_skips_deletions_for_that_vm() -> None:
    collaborator = _collaborator([VirtualMachineRef("vms", "web")], {})
    collaborator.list_backups.side_effect = HarvesterApiError(operation="list VirtualMachineBackup objects", reason="timeout")

    summary = _orchestrator(collaborator).run()

    assert summary.listing_failures == 1
    assert summary.backups_created == 1
    assert summary.results[0].status == "listing_failed"
    assert "list stage failed" in summary.results[0].message
    collaborator.delete_backup.assert_not_called()


def test_run_with_no_existing_backups_finishes_without_deletions() -> None:
    collaborator = _collaborator([VirtualMachineRef("vms", "web")], {})

    summary = _orchestrator(collaborator).run()

    assert summary.results[0].status == "done"
    assert summary.backups_evaluated == 0
    assert summary.failures == 0
    collaborator.delete_backup.assert_not_called()


def test_run_with_mixed_history_deletes_pruned_backups_oldest_first() -> None:
    records = [
        _record("web", 1),
        _record("web", 10),
        _record("web", 15),
        _record("web", 20),
        _record("web", 400),
        _record("web", 500),
    ]
    collaborator = _collaborator([VirtualMachineRef("vms", "web")], {"web": records})

    summary = _orchestrator(collaborator).run()

    assert summary.backups_evaluated == 6
    assert summary.deletions_planned == 3
    assert summary.backups_deleted == 3
    assert collaborator.delete_backup.call_args_list == [
        call("vms", "web-500d"),
        call("vms", "web-400d"),
        call("vms", "web-20d"),
    ]


def test_run_with_deletion_failure_continues_with_remaining_backups() -> None:
    records = [_record("web", 1), _record("web", 400), _record("web", 500)]
    collaborator = _collaborator([VirtualMachineRef("vms", "web")], {"web": records})
    collaborator.delete_backup.side_effect = [HarvesterApiError(operation="delete", reason="boom"), None]

    summary = _orchestrator(collaborator).run()

    result = summary.results[0]
    assert result.status == "deletion_failed"
    assert result.failed_deletions == (_record("web", 500),)
    assert result.deleted == (_record("web", 400),)
    assert "delete stage failed: vms/web-500d" in result.message
    assert summary.deletion_failures == 1
    assert summary.backups_deleted == 1
    assert collaborator.delete_backup.call_count == 2


def test_run_with_dry_run_plans_without_mutating_calls() -> None:
    records = [_record("web", 1), _record("web", 15), _record("web", 20), _record("web", 400)]
    collaborator = _collaborator([VirtualMachineRef("vms", "web")], {"web": records})

    summary = _orchestrator(collaborator, dry_run=True).run()

    assert summary.dry_run is True
    assert summary.backups_created == 0
    assert summary.deletions_planned == 2
    assert summary.backups_deleted == 0
    assert summary.results[0].planned_deletions == (_record("web", 400), _record("web", 20))
    assert summary.results[0].backup_name == "web-20240630120000"
    collaborator.create_backup.assert_not_called()
    collaborator.delete_backup.assert_not_called()
    collaborator.list_backups.assert_called_once_with("vms", "web")


def test_run_with_debug_logging_traces_each_decision(caplog: pytest.LogCaptureFixture) -> None:
    records = [_record("web", 1), _record("web", 15), _record("web", 20), _record("web", 400)]
    collaborator = _collaborator([VirtualMachineRef("vms", "web")], {"web": records})

    with caplog.at_level(logging.DEBUG, logger="harvester_auto_backup.orchestrator"):
        _orchestrator(collaborator).run()

    messages = [record.getMessage() for record in caplog.records]
    assert "vms/web: keep web-1d (newer than weekly boundary)" in messages
    assert "vms/web: keep web-15d (newest in week 24)" in messages
    assert "vms/web: delete web-20d (superseded in week 24 by web-15d)" in messages
    assert "vms/web: delete web-400d (older than delete boundary)" in messages


def test_process_vm_uses_generated_backup_name() -> None:
    collaborator = _collaborator([VirtualMachineRef("vms", "web")], {})

    _orchestrator(collaborator).run()

    collaborator.create_backup.assert_called_once_with("vms", "web", "web-20240630120000")


def test_backup_name_for_with_valid_vm_name_keeps_it_verbatim() -> None:
    assert backup_name_for("web.a", _NOW) == "web.a-20240630120000"
    assert backup_name_for("web-a", _NOW) == "web-a-20240630120000"


def test_backup_name_for_with_invalid_vm_name_appends_digest() -> None:
    name = backup_name_for("Web_A", _NOW)

    assert re.fullmatch(r"web-a-[0-9a-f]{8}-20240630120000", name)
    assert backup_name_for("web_a", _NOW) != name


def test_backup_name_for_with_overlong_vm_name_truncates_and_appends_digest() -> None:
    first = backup_name_for("x" * 300 + "-alpha", _NOW)
    second = backup_name_for("x" * 300 + "-bravo", _NOW)

    assert first != second
    assert len(first) <= MAX_BACKUP_NAME_LENGTH
    assert len(second) <= MAX_BACKUP_NAME_LENGTH
    assert re.fullmatch(r"x+-[0-9a-f]{8}-20240630120000", first)


def test_run_with_similar_vm_names_creates_distinct_backups() -> None:
    machines = [
        VirtualMachineRef("vms", "web-a"),
        VirtualMachineRef("vms", "web.a"),
        VirtualMachineRef("vms", "x" * 48 + "-alpha"),
        VirtualMachineRef("vms", "x" * 48 + "-bravo"),
    ]
    collaborator = _collaborator(machines, {})

    summary = _orchestrator(collaborator).run()

    names = [create.args[2] for create in collaborator.create_backup.call_args_list]
    assert len(set(names)) == 4
    assert summary.backups_created == 4
    assert summary.creation_failures == 0


def test_run_with_misordered_offsets_raises_configuration_error() -> None:
    collaborator = _collaborator([VirtualMachineRef("vms", "web")], {})
    orchestrator = BackupOrchestrator(
        collaborator=collaborator,
        config=OrchestratorConfig(
            label="auto-backup",
            weekly_boundary_offset=RetentionOffset(3, "months"),
            monthly_boundary_offset=RetentionOffset(2, "months"),
            delete_boundary_offset=RetentionOffset(1, "years"),
        ),
        clock=lambda: _NOW,
    )

    with pytest.raises(ConfigurationError, match="Invalid retention offsets"):
        orchestrator.run()
    collaborator.list_virtual_machines.assert_not_called()


def test_stage_errors_prefix_stage_name() -> None:
    assert str(BackupCreationError(reason="conflict")) == "create stage failed: conflict"
    assert str(BackupDeletionError(reason="  ")) == "delete stage failed: unknown error"
