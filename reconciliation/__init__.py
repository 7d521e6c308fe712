"""Month-end reconciliation for district statistics."""

from reconciliation.alerts import AlertEmitter
from reconciliation.change_detection import ChangeDetector, DataChanges
from reconciliation.config import (
    ConfigValidationError,
    ReconciliationConfig,
    ReconciliationConfigStore,
    SignificantChangeThresholds,
    load_config_file,
)
from reconciliation.jobs import JobNotFoundError, ReconciliationJob, ReconciliationJobStore, create_job
from reconciliation.runtime import CycleReport, ReconciliationCycleError, ReconciliationCycleRunner
from reconciliation.scheduler import DispatchSummary, ReconciliationScheduler
from reconciliation.service import ReconciliationOrchestrator, SyncReport, snapshot_fetcher
from reconciliation.state_machine import ReconciliationStateMachine, ReconciliationStatus

__all__ = [
    "AlertEmitter",
    "ChangeDetector",
    "ConfigValidationError",
    "CycleReport",
    "DataChanges",
    "DispatchSummary",
    "JobNotFoundError",
    "ReconciliationConfig",
    "ReconciliationConfigStore",
    "ReconciliationCycleError",
    "ReconciliationCycleRunner",
    "ReconciliationJob",
    "ReconciliationJobStore",
    "ReconciliationOrchestrator",
    "ReconciliationScheduler",
    "ReconciliationStateMachine",
    "ReconciliationStatus",
    "SignificantChangeThresholds",
    "SyncReport",
    "create_job",
    "load_config_file",
    "snapshot_fetcher",
]
