"""Batch entry point: one backup-and-prune run configured from ``HAB_*`` variables."""

from __future__ import annotations

from collections.abc import Mapping
import logging
import sys

from harvester_auto_backup.config import AppConfig, ConfigurationError, load_config
from harvester_auto_backup.k8s import (
    HarvesterBackupClient,
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    load_kubernetes_clients,
)
from harvester_auto_backup.models import RunSummary
from harvester_auto_backup.orchestrator import BackupOrchestrator, OrchestratorConfig

EXIT_OK = 0
EXIT_CLUSTER_ERROR = 1
EXIT_CONFIGURATION_ERROR = 2

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    # Keep request-level chatter from the API client out of verbose traces.
    logging.getLogger("kubernetes").setLevel(logging.INFO if verbose else logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_orchestrator(config: AppConfig) -> BackupOrchestrator:
    clients = load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )
    collaborator = HarvesterBackupClient(clients, request_timeout_seconds=config.request_timeout_seconds)
    return BackupOrchestrator(collaborator=collaborator, config=orchestrator_config(config))


def orchestrator_config(config: AppConfig) -> OrchestratorConfig:
    return OrchestratorConfig(
        label=config.label,
        namespace=config.namespace,
        dry_run=config.dry_run,
        weekly_boundary_offset=config.weekly_boundary_offset,
        monthly_boundary_offset=config.monthly_boundary_offset,
        delete_boundary_offset=config.delete_boundary_offset,
    )


def main(environ: Mapping[str, str] | None = None) -> int:
    try:
        config = load_config(environ)
    except ConfigurationError as error:
        configure_logging(verbose=False)
        logger.error("Configuration error: %s", error)
        return EXIT_CONFIGURATION_ERROR

    configure_logging(verbose=config.verbose)
    logger.info(
        "Starting backup run for VMs labeled '%s=true' in %s%s; retention weekly=%s monthly=%s delete=%s.",
        config.label,
        f"namespace '{config.namespace}'" if config.namespace else "all namespaces",
        " (dry-run)" if config.dry_run else "",
        config.weekly_boundary_offset,
        config.monthly_boundary_offset,
        config.delete_boundary_offset,
    )

    try:
        orchestrator = build_orchestrator(config)
        summary = orchestrator.run()
    except ConfigurationError as error:
        logger.error("Configuration error: %s", error)
        return EXIT_CONFIGURATION_ERROR
    except KubernetesAuthenticationError as error:
        logger.error("%s", error)
        return EXIT_CLUSTER_ERROR
    except KubernetesDiscoveryError as error:
        logger.error("%s", error)
        return EXIT_CLUSTER_ERROR

    _report(summary)
    return EXIT_OK


def _report(summary: RunSummary) -> None:
    # Per-VM failures were already logged by the orchestrator as they happened.
    if summary.failures:
        logger.warning(
            "%d failure(s) during the run (create=%d, list=%d, delete=%d); "
            "affected backups will be re-evaluated on the next run.",
            summary.failures,
            summary.creation_failures,
            summary.listing_failures,
            summary.deletion_failures,
        )


if __name__ == "__main__":
    raise SystemExit(main())
