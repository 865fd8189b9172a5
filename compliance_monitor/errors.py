"""Exception hierarchy for the compliance monitor.

Classes:
    ComplianceMonitorError: Base class for all monitor errors
    StorageError: Persistence layer failed on read or write
    FieldEncryptionError: A single sensitive field could not be encrypted/decrypted
    RuleDetectorError: A compliance rule detector raised during evaluation
    ProbeExecutionError: A security probe raised or timed out
    ResolutionError: A violation/vulnerability could not be resolved
    JobBusyError: An on-demand run was requested while the same job is running
"""


class ComplianceMonitorError(Exception):
    """Base class for compliance monitor errors."""


class StorageError(ComplianceMonitorError):
    """Raised when the persistence layer fails.

    Propagated to the caller of the store operation; never retried internally.
    """


class FieldEncryptionError(ComplianceMonitorError):
    """Raised when a single sensitive field cannot be encrypted or decrypted.

    Attributes:
        field: Name of the details key that failed
    """

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Field '{field}' encryption failed: {reason}")


class RuleDetectorError(ComplianceMonitorError):
    """Raised when a rule's detector fails during evaluation.

    Attributes:
        rule_id: ID of the rule whose detector failed
    """

    def __init__(self, rule_id: str, reason: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Detector for rule '{rule_id}' failed: {reason}")


class ProbeExecutionError(ComplianceMonitorError):
    """Raised when a security probe raises or exceeds its timeout.

    Attributes:
        probe_id: ID of the probe that failed
    """

    def __init__(self, probe_id: str, reason: str) -> None:
        self.probe_id = probe_id
        super().__init__(f"Probe '{probe_id}' failed: {reason}")


class ResolutionError(ComplianceMonitorError):
    """Raised when a finding cannot be resolved (unknown id or storage failure)."""


class JobBusyError(ComplianceMonitorError):
    """Raised when an on-demand run overlaps a run of the same job.

    Attributes:
        job_name: Name of the busy job
    """

    def __init__(self, job_name: str) -> None:
        self.job_name = job_name
        super().__init__(f"Job '{job_name}' is already running")
