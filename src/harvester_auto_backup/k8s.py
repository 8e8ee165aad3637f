from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, TypeVar
import logging
import os
import tempfile

from kubernetes import client, config
from kubernetes.client import ApiException

from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS
from .models import BackupRecord, VirtualMachineRef

VM_API_GROUP = "kubevirt.io"
VM_API_VERSION = "v1"
VM_PLURAL = "virtualmachines"
VM_KIND = "VirtualMachine"

BACKUP_API_GROUP = "harvesterhci.io"
BACKUP_API_VERSION = "v1beta1"
BACKUP_PLURAL = "virtualmachinebackups"
BACKUP_KIND = "VirtualMachineBackup"

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    custom_api: client.CustomObjectsApi


class KubernetesDiscoveryError(RuntimeError):
    """Raised when VM discovery cannot safely continue."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class HarvesterApiError(RuntimeError):
    def __init__(self, *, operation: str, reason: str, status: int | None = None) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"failed to {operation}: {normalized_reason}")
        self.operation = operation
        self.status = status


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        custom_api=client.CustomObjectsApi(api_client),
    )


class HarvesterBackupClient:
    """Cluster adapter for KubeVirt VMs and Harvester VM backups."""

    def __init__(
        self,
        clients: KubernetesClients,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        self.custom_api = clients.custom_api
        self.request_timeout_seconds = request_timeout_seconds

    def list_virtual_machines(self, label: str, namespace: str | None = None) -> list[VirtualMachineRef]:
        selector = f"{label}=true"
        if namespace:
            response = _safe_kubernetes_discovery_call(
                operation=f"list VirtualMachines labeled '{selector}' in namespace '{namespace}'",
                hint="Check namespace spelling, API reachability, and RBAC list verbs for kubevirt.io virtualmachines.",
                func=lambda: self.custom_api.list_namespaced_custom_object(
                    VM_API_GROUP,
                    VM_API_VERSION,
                    namespace,
                    VM_PLURAL,
                    label_selector=selector,
                    _request_timeout=self.request_timeout_seconds,
                ),
            )
        else:
            response = _safe_kubernetes_discovery_call(
                operation=f"list VirtualMachines labeled '{selector}' across all namespaces",
                hint="Confirm cluster connectivity and cluster-wide RBAC list verbs for kubevirt.io virtualmachines.",
                func=lambda: self.custom_api.list_cluster_custom_object(
                    VM_API_GROUP,
                    VM_API_VERSION,
                    VM_PLURAL,
                    label_selector=selector,
                    _request_timeout=self.request_timeout_seconds,
                ),
            )

        machines: list[VirtualMachineRef] = []
        for item in _items(response):
            metadata = item.get("metadata") or {}
            name = metadata.get("name")
            item_namespace = metadata.get("namespace") or namespace
            if not name or not item_namespace:
                continue
            machines.append(VirtualMachineRef(namespace=item_namespace, name=name))

        machines.sort(key=lambda machine: (machine.namespace, machine.name))
        return machines

    def create_backup(self, namespace: str, vm_name: str, backup_name: str) -> None:
        body = {
            "apiVersion": f"{BACKUP_API_GROUP}/{BACKUP_API_VERSION}",
            "kind": BACKUP_KIND,
            "metadata": {"name": backup_name, "namespace": namespace},
            "spec": {
                "source": {"apiGroup": VM_API_GROUP, "kind": VM_KIND, "name": vm_name},
                "type": "backup",
            },
        }
        operation = f"create {BACKUP_KIND} '{namespace}/{backup_name}' for VM '{vm_name}'"
        try:
            self.custom_api.create_namespaced_custom_object(
                BACKUP_API_GROUP,
                BACKUP_API_VERSION,
                namespace,
                BACKUP_PLURAL,
                body,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            reason = _format_api_status(error)
            if error.status == 409:
                reason = f"{reason}; a backup with this name already exists"
            raise HarvesterApiError(operation=operation, reason=reason, status=error.status) from error
        except Exception as error:  # pylint: disable=broad-except
            raise HarvesterApiError(operation=operation, reason=error_message(error)) from error

    def list_backups(self, namespace: str, vm_name: str) -> list[BackupRecord]:
        operation = f"list {BACKUP_KIND} objects in namespace '{namespace}'"
        try:
            response = self.custom_api.list_namespaced_custom_object(
                BACKUP_API_GROUP,
                BACKUP_API_VERSION,
                namespace,
                BACKUP_PLURAL,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            raise HarvesterApiError(operation=operation, reason=_format_api_status(error), status=error.status) from error
        except Exception as error:  # pylint: disable=broad-except
            raise HarvesterApiError(operation=operation, reason=error_message(error)) from error

        records: list[BackupRecord] = []
        for item in _items(response):
            spec = item.get("spec") or {}
            source = spec.get("source") or {}
            if source.get("name") != vm_name:
                continue

            metadata = item.get("metadata") or {}
            name = metadata.get("name")
            created_at = parse_creation_timestamp(metadata.get("creationTimestamp"))
            if not name or created_at is None:
                logger.warning(
                    "Skipping %s in namespace '%s' without a usable name or creationTimestamp: %r",
                    BACKUP_KIND,
                    namespace,
                    metadata,
                )
                continue

            records.append(
                BackupRecord(
                    namespace=metadata.get("namespace") or namespace,
                    name=name,
                    created_at=created_at,
                    vm_name=vm_name,
                )
            )
        return records

    def delete_backup(self, namespace: str, name: str) -> None:
        operation = f"delete {BACKUP_KIND} '{namespace}/{name}'"
        try:
            self.custom_api.delete_namespaced_custom_object(
                BACKUP_API_GROUP,
                BACKUP_API_VERSION,
                namespace,
                BACKUP_PLURAL,
                name,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            if error.status == 404:
                logger.debug("%s already gone: %s/%s", BACKUP_KIND, namespace, name)
                return
            raise HarvesterApiError(operation=operation, reason=_format_api_status(error), status=error.status) from error
        except Exception as error:  # pylint: disable=broad-except
            raise HarvesterApiError(operation=operation, reason=error_message(error)) from error


def parse_creation_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).replace(microsecond=0)


def _items(response: Any) -> list[dict[str, Any]]:
    if not isinstance(response, dict):
        return []
    return [item for item in response.get("items") or [] if isinstance(item, dict)]


def _safe_kubernetes_discovery_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesDiscoveryError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise KubernetesDiscoveryError(
            f"Kubernetes discovery failed while trying to {operation}: {error}. {hint}"
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    return (
        f"Kubernetes discovery failed while trying to {operation}: "
        f"{_format_api_status(error)}. {hint}"
    )


def _format_api_status(error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"API status {status} ({reason})"


def error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
