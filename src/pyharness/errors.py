from __future__ import annotations


class HarnessError(RuntimeError):
    """Base class for tool-core errors.

    `kind` is the short identifier reported in ToolResult.error.
    """

    kind = "error"


class ValidationError(HarnessError):
    kind = "validation"


class NotFoundError(HarnessError):
    kind = "not-found"


class ConflictError(HarnessError):
    kind = "conflict"


class PermissionDeniedError(HarnessError):
    kind = "permission-denied"


class ExecutionError(HarnessError):
    kind = "execution"
    environment_lost = False


class EnvironmentLostError(ExecutionError):
    """The sandbox environment crashed or was killed while a call was running."""

    kind = "environment-lost"
    environment_lost = True


class ServerDisconnectedError(ExecutionError):
    kind = "server-disconnected"


class RemoteToolError(ExecutionError):
    kind = "remote-error"


class ToolTimeoutError(HarnessError):
    kind = "timeout"


class ToolCancelledError(HarnessError):
    kind = "cancelled"


# Fatal: these abort session start instead of producing a per-call result.

class SandboxUnavailableError(HarnessError):
    kind = "sandbox-unavailable"


class TransportUnavailableError(HarnessError):
    kind = "transport-unavailable"
