"""Failure taxonomy for runmeter.

Sandbox errors are always caught by the runner and encoded into the
ExecutionResult. Metering, processing and snapshot errors are operational:
they are logged where they happen and never reach the caller.
"""
from typing import List, Optional


class RunmeterError(Exception):
    """Base class for all runmeter failures."""

    kind = "runmeter_error"


class SandboxError(RunmeterError):
    """A single sandboxed execution failed."""

    kind = "sandbox_error"

    def __init__(self, message: str, logs: Optional[List[str]] = None, exit_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.logs = list(logs or [])
        self.exit_code = exit_code


class FetchFailure(SandboxError):
    kind = "fetch_failure"


class BuildFailure(SandboxError):
    kind = "build_failure"


class TimeoutFailure(SandboxError):
    kind = "timeout"


class RuntimeCrash(SandboxError):
    kind = "runtime_crash"


class ResourceExceeded(SandboxError):
    kind = "resource_exceeded"


class MeteringError(RunmeterError):
    kind = "metering_error"


class MeteringPersistFailure(MeteringError):
    kind = "metering_persist_failure"


class EventPublishFailure(MeteringError):
    kind = "event_publish_failure"


class ProcessingFailure(RunmeterError):
    """A stream entry could not be applied to the real-time counters."""

    kind = "processing_failure"

    def __init__(self, entry_id: str, message: str):
        super().__init__(f"Entry {entry_id}: {message}")
        self.entry_id = entry_id


class SnapshotFailure(RunmeterError):
    kind = "snapshot_failure"
