from __future__ import annotations

from pathlib import Path
import os

import streamlit as st
import yaml

from harvester_auto_backup.config import (
    DEFAULT_DELETE_BOUNDARY_OFFSET,
    DEFAULT_MONTHLY_BOUNDARY_OFFSET,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_WEEKLY_BOUNDARY_OFFSET,
    ConfigurationError,
    is_incluster_service_account_environment,
    parse_offset,
)
from harvester_auto_backup.k8s import (
    HarvesterBackupClient,
    KubernetesDiscoveryError,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from harvester_auto_backup.models import RetentionOffset, RunSummary, VMRunResult
from harvester_auto_backup.orchestrator import BackupOrchestrator, OrchestratorConfig
from harvester_auto_backup.retention import compute_thresholds

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_RUN_MODE_PREVIEW_LABEL = "Preview (dry-run)"
_RUN_MODE_LIVE_LABEL = "Live (create and delete backups)"

_STATUS_HINTS = {
    "backup_failed": "Check RBAC create verbs for virtualmachinebackups and whether a backup with the same name exists.",
    "listing_failed": "Check RBAC list verbs for virtualmachinebackups in this namespace.",
    "deletion_failed": "Remaining backups are retried on the next run; check RBAC delete verbs.",
}


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "clients": None,
        "last_summary": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_vm_rows(results: list[VMRunResult]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for result in results:
        rows.append(
            {
                "namespace": result.namespace,
                "vm": result.vm_name,
                "status": result.status,
                "backup": result.backup_name or "",
                "backup_created": "yes" if result.backup_created else "no",
                "evaluated": str(result.evaluated),
                "planned_deletions": str(len(result.planned_deletions)),
                "deleted": str(len(result.deleted)),
                "actionable_message": _actionable_next_step(result),
            }
        )
    return rows


def _build_deletion_rows(results: list[VMRunResult]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for result in results:
        deleted = set(result.deleted)
        failed = set(result.failed_deletions)
        for record in result.planned_deletions:
            outcome = "planned"
            if record in deleted:
                outcome = "deleted"
            elif record in failed:
                outcome = "failed"
            rows.append(
                {
                    "namespace": record.namespace,
                    "vm": record.vm_name,
                    "backup": record.name,
                    "created_at": record.created_at.isoformat(),
                    "outcome": outcome,
                }
            )
    return rows


def _actionable_next_step(result: VMRunResult) -> str:
    if result.status == "done":
        return "No follow-up action required."
    hint = _STATUS_HINTS.get(result.status, "Inspect job logs for more detail.")
    message = result.message.strip()
    return f"{message} | Next step: {hint}" if message else f"Next step: {hint}"


def _parse_offset_inputs(*, weekly: str, monthly: str, delete: str) -> tuple[dict[str, RetentionOffset], list[str]]:
    offsets: dict[str, RetentionOffset] = {}
    errors: list[str] = []
    for key, raw in (("weekly", weekly), ("monthly", monthly), ("delete", delete)):
        try:
            offsets[key] = parse_offset(raw)
        except ConfigurationError as error:
            errors.append(f"{key.capitalize()} boundary: {error}")

    if not errors:
        try:
            compute_thresholds(
                weekly_offset=offsets["weekly"],
                monthly_offset=offsets["monthly"],
                delete_offset=offsets["delete"],
            )
        except ValueError as error:
            errors.append(f"Invalid retention offsets: {error}")
    return offsets, errors


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("HAB_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.exists():
        return f"Kubeconfig path does not exist: {expanded_path}"
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to a file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        missing_fields_csv = ", ".join(missing_fields)
        return f"{source_label} is missing required field(s): {missing_fields_csv}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def _render_summary(summary: RunSummary) -> None:
    columns = st.columns(5)
    columns[0].metric("VMs", summary.vms_processed)
    columns[1].metric("Backups created", summary.backups_created)
    columns[2].metric("Backups evaluated", summary.backups_evaluated)
    columns[3].metric("Deletions planned", summary.deletions_planned)
    columns[4].metric("Backups deleted", summary.backups_deleted)

    if summary.no_matching_vms:
        st.info("No matching VMs for the current label and namespace.")
        return

    if summary.failures:
        st.error(
            f"Run finished with failures: create={summary.creation_failures}, "
            f"list={summary.listing_failures}, delete={summary.deletion_failures}."
        )
    elif summary.dry_run:
        st.success("Preview finished. No backups were created or deleted.")
    else:
        st.success("Run finished successfully.")

    st.subheader("Virtual Machines")
    st.dataframe(_build_vm_rows(summary.results), use_container_width=True, hide_index=True)

    st.subheader("Retention Plan" if summary.dry_run else "Deletions")
    deletion_rows = _build_deletion_rows(summary.results)
    if deletion_rows:
        st.dataframe(deletion_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No backups fall outside the retention policy.")


def main() -> None:
    st.set_page_config(page_title="Harvester Auto Backup", layout="wide")
    _initialize_state()

    st.title("Harvester Auto Backup")
    st.caption("Back up labeled VMs and prune their history with weekly, monthly, and yearly retention tiers.")

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    default_auth_mode = _default_auth_mode()
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(default_auth_mode),
    )
    context = st.sidebar.text_input(
        "Kubernetes context (optional)",
        value="",
        help=(
            "Ignored for in-cluster service account mode."
            if auth_mode == _AUTH_MODE_IN_CLUSTER
            else "Optional kubeconfig context override."
        ),
    )

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                kubeconfig_path: str | None = None
                in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER

                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                st.session_state.clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=in_cluster,
                )
                st.session_state.connected = True
                st.session_state.connection = {
                    "auth_mode": auth_mode,
                    "kubeconfig_path": kubeconfig_path,
                    "context": context or None,
                    "in_cluster": in_cluster,
                }
                st.session_state.last_summary = None
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.connection = {}
        st.session_state.last_summary = None

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to preview or run the backup workflow.")
        return

    st.subheader("Selection")
    label = st.text_input("VM label key", value=os.getenv("HAB_LABEL", ""), help="VMs labeled '<key>=true' are backed up.")
    namespace = st.text_input("Namespace (optional)", value=os.getenv("HAB_NAMESPACE", ""), help="Leave blank for all namespaces.")

    st.subheader("Retention")
    offset_columns = st.columns(3)
    weekly_input = offset_columns[0].text_input("Weekly boundary", value="2w", help=f"Default {DEFAULT_WEEKLY_BOUNDARY_OFFSET}.")
    monthly_input = offset_columns[1].text_input("Monthly boundary", value="2mo", help=f"Default {DEFAULT_MONTHLY_BOUNDARY_OFFSET}.")
    delete_input = offset_columns[2].text_input("Delete boundary", value="1y", help=f"Default {DEFAULT_DELETE_BOUNDARY_OFFSET}.")

    run_mode = st.radio("Run mode", options=[_RUN_MODE_PREVIEW_LABEL, _RUN_MODE_LIVE_LABEL], index=0, horizontal=True)

    if st.button("Run"):
        offsets, errors = _parse_offset_inputs(weekly=weekly_input, monthly=monthly_input, delete=delete_input)
        if not label.strip():
            errors.insert(0, "VM label key is required.")
        if errors:
            for error in errors:
                st.error(error)
        else:
            orchestrator = BackupOrchestrator(
                collaborator=HarvesterBackupClient(
                    st.session_state.clients,
                    request_timeout_seconds=DEFAULT_REQUEST_TIMEOUT_SECONDS,
                ),
                config=OrchestratorConfig(
                    label=label.strip(),
                    namespace=namespace.strip() or None,
                    dry_run=run_mode == _RUN_MODE_PREVIEW_LABEL,
                    weekly_boundary_offset=offsets["weekly"],
                    monthly_boundary_offset=offsets["monthly"],
                    delete_boundary_offset=offsets["delete"],
                ),
            )
            with st.spinner("Running backup workflow..."):
                try:
                    st.session_state.last_summary = orchestrator.run()
                except (ConfigurationError, KubernetesDiscoveryError) as error:
                    st.error(str(error))

    if st.session_state.last_summary is not None:
        _render_summary(st.session_state.last_summary)


if __name__ == "__main__":
    main()
