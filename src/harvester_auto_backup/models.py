from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class VirtualMachineRef:
    namespace: str
    name: str


@dataclass(frozen=True)
class BackupRecord:
    namespace: str
    name: str
    created_at: datetime
    vm_name: str


@dataclass(frozen=True)
class RetentionOffset:
    amount: int
    unit: str

    def __str__(self) -> str:
        return f"{self.amount} {self.unit}"


@dataclass(frozen=True)
class RetentionThresholds:
    now: datetime
    weekly_boundary: datetime
    monthly_boundary: datetime
    delete_boundary: datetime


@dataclass(frozen=True)
class VMRunResult:
    namespace: str
    vm_name: str
    status: str
    backup_name: str | None = None
    backup_created: bool = False
    evaluated: int = 0
    planned_deletions: tuple[BackupRecord, ...] = ()
    deleted: tuple[BackupRecord, ...] = ()
    failed_deletions: tuple[BackupRecord, ...] = ()
    message: str = ""


@dataclass
class RunSummary:
    dry_run: bool = False
    vms_discovered: int = 0
    vms_processed: int = 0
    backups_created: int = 0
    backups_evaluated: int = 0
    deletions_planned: int = 0
    backups_deleted: int = 0
    creation_failures: int = 0
    listing_failures: int = 0
    deletion_failures: int = 0
    results: list[VMRunResult] = field(default_factory=list)

    @property
    def no_matching_vms(self) -> bool:
        return self.vms_discovered == 0

    @property
    def failures(self) -> int:
        return self.creation_failures + self.listing_failures + self.deletion_failures
