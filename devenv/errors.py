from __future__ import annotations


class DevenvError(Exception):
    """Failure of a core operation, tagged with the operation and resource it concerns."""

    def __init__(self, message: str, operation: str | None = None, resource: str | None = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.resource = resource

    def __str__(self) -> str:
        prefix = " ".join(p for p in (self.operation, self.resource) if p)
        return f"{prefix}: {self.message}" if prefix else self.message


class DaemonUnavailable(DevenvError):
    """The container runtime could not be reached."""


class ResourceNotFound(DevenvError):
    pass


class ResourceConflict(DevenvError):
    """The runtime refused the request because of the resource's current state (e.g. volume in use)."""


class OperationTimeout(DevenvError):
    pass


class JobFailed(DevenvError):
    """A helper container exited non-zero."""

    def __init__(
        self,
        message: str,
        exit_code: int,
        output: str = "",
        operation: str | None = None,
        resource: str | None = None,
    ):
        super().__init__(message, operation=operation, resource=resource)
        self.exit_code = exit_code
        self.output = output


class NoAvailablePort(DevenvError):
    pass


class SyncInProgress(DevenvError):
    pass


class SyncCancelled(DevenvError):
    pass
