"""
Pipeline error taxonomy.

Stage-local conditions are recorded on the execution as warnings or errors;
fatal ones abort the run. Every error knows how to render itself as the
entry stored in ImportExecution.errors / ImportExecution.warnings.
"""
from datetime import datetime
from typing import Any, Dict, Optional

SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"
SEVERITY_FATAL = "fatal"


def make_entry(
    code: str,
    message: str,
    severity: str,
    geoid: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build a recorded error/warning entry."""
    return {
        "code": code,
        "message": message,
        "geoid": geoid,
        "severity": severity,
        "timestamp": (timestamp or datetime.utcnow()).isoformat(),
    }


class PipelineError(Exception):
    """
    Base exception for pipeline conditions.

    Attributes:
        code: Stable machine-readable code (e.g. DATASET_UNAVAILABLE)
        message: Human-readable description
        geoid: Geographic unit the condition concerns, if any
        fatal: Whether the condition aborts the run
    """

    code = "PIPELINE_ERROR"
    default_severity = SEVERITY_ERROR

    def __init__(self, message: str, geoid: Optional[str] = None, fatal: bool = False):
        super().__init__(message)
        self.message = message
        self.geoid = geoid
        self.fatal = fatal

    @property
    def severity(self) -> str:
        return SEVERITY_FATAL if self.fatal else self.default_severity

    def to_entry(self) -> Dict[str, Any]:
        return make_entry(self.code, self.message, self.severity, self.geoid)


class DatasetUnavailable(PipelineError):
    """
    Source unreachable or corrupt after all retries.

    Fatal for critical (national/primary) feeds; for a state-scoped feed the
    state is skipped and the condition is recorded as a warning.
    """

    code = "DATASET_UNAVAILABLE"
    default_severity = SEVERITY_WARNING

    def __init__(
        self,
        source_id: str,
        message: str,
        critical: bool = False,
        state_fips: Optional[str] = None,
        retryable: bool = True,
    ):
        super().__init__(f"{source_id}: {message}", fatal=critical)
        self.source_id = source_id
        self.critical = critical
        self.state_fips = state_fips
        self.retryable = retryable


class EvaluationDataMissing(PipelineError):
    """A unit has no economic profile; it is skipped with a warning."""

    code = "EVALUATION_DATA_MISSING"
    default_severity = SEVERITY_WARNING


class ReconciliationConflict(PipelineError):
    """
    A unit matches designation types the tie-break policy cannot order.

    Recorded as an error; the unit is left as-is and the run continues.
    """

    code = "RECONCILIATION_CONFLICT"
    default_severity = SEVERITY_ERROR

    def __init__(self, geoid: str, candidate_types):
        types = ", ".join(sorted(str(getattr(t, "value", t)) for t in candidate_types))
        super().__init__(
            f"Unit {geoid} matches designation types that cannot be ordered: {types}",
            geoid=geoid,
        )
        self.candidate_types = list(candidate_types)


class PersistenceFailure(PipelineError):
    """Transactional commit failed; always fatal, the transaction is rolled back."""

    code = "PERSISTENCE_FAILURE"

    def __init__(self, message: str):
        super().__init__(message, fatal=True)


class GeospatialResolutionError(PipelineError):
    """A business location cannot be resolved; recorded as a warning for that business."""

    code = "GEOSPATIAL_RESOLUTION_ERROR"
    default_severity = SEVERITY_WARNING

    def __init__(self, business_id: str, message: str, geoid: Optional[str] = None):
        super().__init__(f"Business {business_id}: {message}", geoid=geoid)
        self.business_id = business_id


class ExecutionTimeout(PipelineError):
    """The run exceeded the overall job timeout."""

    code = "EXECUTION_TIMEOUT"

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Execution exceeded timeout of {timeout_seconds}s", fatal=True)


class ExecutionCancelled(PipelineError):
    """An operator requested cancellation; honored at the next stage boundary."""

    code = "EXECUTION_CANCELLED"
    default_severity = SEVERITY_WARNING

    def __init__(self, stage: str):
        super().__init__(f"Cancelled before stage '{stage}'")
        self.stage = stage


class ExecutionAlreadyRunning(Exception):
    """
    A trigger arrived while another execution holds the lock.

    The trigger is rejected, never queued.
    """

    def __init__(self, execution_id: Optional[str]):
        super().__init__(f"Import execution {execution_id} is already running")
        self.execution_id = execution_id


class ExecutionNotFound(Exception):
    """No execution with the requested identifier."""

    def __init__(self, execution_id: str):
        super().__init__(f"Import execution {execution_id} not found")
        self.execution_id = execution_id
