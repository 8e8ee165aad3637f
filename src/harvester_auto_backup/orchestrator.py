from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Protocol
import hashlib
import logging
import re

from .config import ConfigurationError
from .k8s import error_message
from .models import BackupRecord, RetentionOffset, RetentionThresholds, RunSummary, VMRunResult, VirtualMachineRef
from .retention import (
    RetentionClassification,
    bucket_survivors,
    classify_backups,
    compute_thresholds,
    deletions_for,
    retention_sort_key,
    utc_now,
)

MAX_BACKUP_NAME_LENGTH = 253
NAME_DIGEST_LENGTH = 8

STATUS_DONE = "done"
STATUS_BACKUP_FAILED = "backup_failed"
STATUS_LISTING_FAILED = "listing_failed"
STATUS_DELETION_FAILED = "deletion_failed"

logger = logging.getLogger(__name__)


class BackupCollaborator(Protocol):
    def list_virtual_machines(self, label: str, namespace: str | None = None) -> list[VirtualMachineRef]: ...

    def create_backup(self, namespace: str, vm_name: str, backup_name: str) -> None: ...

    def list_backups(self, namespace: str, vm_name: str) -> list[BackupRecord]: ...

    def delete_backup(self, namespace: str, name: str) -> None: ...


@dataclass(frozen=True)
class OrchestratorConfig:
    label: str
    weekly_boundary_offset: RetentionOffset
    monthly_boundary_offset: RetentionOffset
    delete_boundary_offset: RetentionOffset
    namespace: str | None = None
    dry_run: bool = False


class BackupStageError(RuntimeError):
    stage = "unknown"

    def __init__(self, *, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{self.stage} stage failed: {normalized_reason}")


class BackupCreationError(BackupStageError):
    stage = "create"


class BackupListingError(BackupStageError):
    stage = "list"


class BackupDeletionError(BackupStageError):
    stage = "delete"


class BackupOrchestrator:
    """Creates a backup for every labeled VM and prunes its backup history.

    VMs are processed one after another. A failure while creating, listing or
    deleting backups for one VM is logged and counted in the run summary; only
    discovery failures abort the run.
    """

    def __init__(
        self,
        *,
        collaborator: BackupCollaborator,
        config: OrchestratorConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.collaborator = collaborator
        self.config = config
        self.clock = clock

    def run(self) -> RunSummary:
        try:
            thresholds = compute_thresholds(
                weekly_offset=self.config.weekly_boundary_offset,
                monthly_offset=self.config.monthly_boundary_offset,
                delete_offset=self.config.delete_boundary_offset,
                now=self.clock(),
            )
        except ValueError as error:
            raise ConfigurationError(f"Invalid retention offsets: {error}") from error
        logger.debug(
            "Retention boundaries: weekly=%s monthly=%s delete=%s",
            thresholds.weekly_boundary.isoformat(),
            thresholds.monthly_boundary.isoformat(),
            thresholds.delete_boundary.isoformat(),
        )

        machines = self.collaborator.list_virtual_machines(self.config.label, self.config.namespace)
        summary = RunSummary(dry_run=self.config.dry_run, vms_discovered=len(machines))
        if not machines:
            scope = f"namespace '{self.config.namespace}'" if self.config.namespace else "all namespaces"
            logger.info("No matching VMs labeled '%s=true' in %s.", self.config.label, scope)
            return summary

        for machine in machines:
            result = self.process_vm(machine, thresholds)
            _record_result(summary, result)

        logger.info(
            "Run finished%s: vms=%d created=%d evaluated=%d planned_deletions=%d deleted=%d "
            "failures(create=%d, list=%d, delete=%d)",
            " (dry-run)" if summary.dry_run else "",
            summary.vms_processed,
            summary.backups_created,
            summary.backups_evaluated,
            summary.deletions_planned,
            summary.backups_deleted,
            summary.creation_failures,
            summary.listing_failures,
            summary.deletion_failures,
        )
        return summary

    def process_vm(self, machine: VirtualMachineRef, thresholds: RetentionThresholds) -> VMRunResult:
        vm_label = f"{machine.namespace}/{machine.name}"
        backup_name = backup_name_for(machine.name, self.clock())

        try:
            created = self._create_backup(machine=machine, backup_name=backup_name)
        except BackupCreationError as error:
            logger.error("%s: %s; skipping retention for this VM.", vm_label, error)
            return VMRunResult(
                namespace=machine.namespace,
                vm_name=machine.name,
                status=STATUS_BACKUP_FAILED,
                backup_name=backup_name,
                message=str(error),
            )

        try:
            records = self._list_backups(machine=machine)
        except BackupListingError as error:
            logger.error("%s: %s; skipping deletions for this VM.", vm_label, error)
            return VMRunResult(
                namespace=machine.namespace,
                vm_name=machine.name,
                status=STATUS_LISTING_FAILED,
                backup_name=backup_name,
                backup_created=created,
                message=str(error),
            )

        if not records:
            logger.info("%s: no existing backups found, nothing to prune.", vm_label)
            return VMRunResult(
                namespace=machine.namespace,
                vm_name=machine.name,
                status=STATUS_DONE,
                backup_name=backup_name,
                backup_created=created,
            )

        classification = classify_backups(records, thresholds)
        _trace_decisions(vm_label, classification)
        planned = sorted(deletions_for(classification), key=retention_sort_key)
        logger.info(
            "%s: evaluated %d backup(s), %d marked for deletion.",
            vm_label,
            len(records),
            len(planned),
        )

        deleted: list[BackupRecord] = []
        failed: list[BackupRecord] = []
        failure_messages: list[str] = []
        for record in planned:
            try:
                if self._delete_backup(record=record):
                    deleted.append(record)
            except BackupDeletionError as error:
                logger.warning("%s: %s", vm_label, error)
                failed.append(record)
                failure_messages.append(str(error))

        return VMRunResult(
            namespace=machine.namespace,
            vm_name=machine.name,
            status=STATUS_DELETION_FAILED if failed else STATUS_DONE,
            backup_name=backup_name,
            backup_created=created,
            evaluated=len(records),
            planned_deletions=tuple(planned),
            deleted=tuple(deleted),
            failed_deletions=tuple(failed),
            message="; ".join(failure_messages),
        )

    def _create_backup(self, *, machine: VirtualMachineRef, backup_name: str) -> bool:
        if self.config.dry_run:
            logger.info(
                "[dry-run] Would create backup %s/%s for VM %s.",
                machine.namespace,
                backup_name,
                machine.name,
            )
            return False

        try:
            self.collaborator.create_backup(machine.namespace, machine.name, backup_name)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupCreationError(reason=error_message(error)) from error
        logger.info("Created backup %s/%s for VM %s.", machine.namespace, backup_name, machine.name)
        return True

    def _list_backups(self, *, machine: VirtualMachineRef) -> list[BackupRecord]:
        try:
            return list(self.collaborator.list_backups(machine.namespace, machine.name))
        except Exception as error:  # pylint: disable=broad-except
            raise BackupListingError(reason=error_message(error)) from error

    def _delete_backup(self, *, record: BackupRecord) -> bool:
        if self.config.dry_run:
            logger.info(
                "[dry-run] Would delete backup %s/%s created %s.",
                record.namespace,
                record.name,
                record.created_at.isoformat(),
            )
            return False

        try:
            self.collaborator.delete_backup(record.namespace, record.name)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupDeletionError(reason=f"{record.namespace}/{record.name}: {error_message(error)}") from error
        logger.info("Deleted backup %s/%s created %s.", record.namespace, record.name, record.created_at.isoformat())
        return True


def backup_name_for(vm_name: str, moment: datetime) -> str:
    """Return ``<vm>-<YYYYMMDDHHMMSS>`` as a DNS-1123 subdomain.

    VM names are used verbatim when they already fit. A name that has to be
    rewritten or shortened gets a digest of the original name appended, so
    distinct VMs never share a backup name.
    """
    timestamp = moment.astimezone(UTC).strftime("%Y%m%d%H%M%S")
    max_prefix_length = MAX_BACKUP_NAME_LENGTH - len(timestamp) - 1
    prefix = _sanitize_dns_subdomain(vm_name)
    if prefix != vm_name or len(prefix) > max_prefix_length:
        digest = hashlib.sha256(vm_name.encode("utf-8")).hexdigest()[:NAME_DIGEST_LENGTH]
        prefix = prefix[: max_prefix_length - NAME_DIGEST_LENGTH - 1].rstrip("-.")
        prefix = f"{prefix}-{digest}" if prefix else digest
    return f"{prefix}-{timestamp}"


def _record_result(summary: RunSummary, result: VMRunResult) -> None:
    summary.vms_processed += 1
    summary.results.append(result)
    if result.status == STATUS_BACKUP_FAILED:
        summary.creation_failures += 1
    elif result.status == STATUS_LISTING_FAILED:
        summary.listing_failures += 1
    if result.backup_created:
        summary.backups_created += 1
    summary.backups_evaluated += result.evaluated
    summary.deletions_planned += len(result.planned_deletions)
    summary.backups_deleted += len(result.deleted)
    summary.deletion_failures += len(result.failed_deletions)


def _trace_decisions(vm_label: str, classification: RetentionClassification) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return

    for record in sorted(classification.recent, key=retention_sort_key):
        logger.debug("%s: keep %s (newer than weekly boundary)", vm_label, record.name)

    for tier, buckets in (("week", classification.week_buckets), ("month", classification.month_buckets)):
        survivors = bucket_survivors(buckets)
        for key in sorted(buckets):
            survivor = survivors[key]
            logger.debug("%s: keep %s (newest in %s %d)", vm_label, survivor.name, tier, key)
            for record in sorted(buckets[key] - {survivor}, key=retention_sort_key):
                logger.debug(
                    "%s: delete %s (superseded in %s %d by %s)",
                    vm_label,
                    record.name,
                    tier,
                    key,
                    survivor.name,
                )

    for record in sorted(classification.to_delete, key=retention_sort_key):
        logger.debug("%s: delete %s (older than delete boundary)", vm_label, record.name)


def _sanitize_dns_subdomain(value: str) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9.-]", "-", lowered)
    normalized = re.sub(r"-+", "-", normalized)
    return normalized.strip("-.")
