"""Error taxonomy for report orchestration."""

from __future__ import annotations


class ReportingError(Exception):
    """Base error carrying a stable machine-readable code."""

    code = "REPORTING_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(ReportingError):
    """Invalid cadence, template, or section configuration."""

    code = "CONFIGURATION_ERROR"


class NotFoundError(ReportingError):
    code = "NOT_FOUND"


class ConflictError(ReportingError):
    """Requested mutation conflicts with the current resource state."""

    code = "CONFLICT"


class AdmissionError(ReportingError):
    """Run creation rejected before any record was written."""

    code = "ADMISSION_REJECTED"


class RateLimitExceeded(AdmissionError):
    code = "RATE_LIMIT_EXCEEDED"


class ConcurrencyLimitExceeded(AdmissionError):
    code = "CONCURRENCY_LIMIT_EXCEEDED"


class SectionExecutionError(ReportingError):
    """One template section failed; the run degrades instead of failing."""

    code = "SECTION_EXECUTION_ERROR"

    def __init__(self, section_key: str, message: str) -> None:
        super().__init__(f"Section {section_key!r} failed: {message}")
        self.section_key = section_key


class ScheduleBusy(ReportingError):
    """Another run of the same schedule is currently running."""

    code = "SCHEDULE_BUSY"


class ExecutorCrash(ReportingError):
    """Unexpected failure escaped the executor's own containment."""

    code = "EXECUTOR_CRASH"
