"""Exception types shared across the node coordination layer."""


class PoolNodeError(Exception):
    """Base class for errors raised by pool_node."""


class NodeRPCError(PoolNodeError):
    """A node RPC call failed, either in transport or with a JSON-RPC error."""

    def __init__(self, message: str, code: int | None = None, method: str = ""):
        super().__init__(message)
        self.message = message
        self.code = code
        self.method = method

    def __str__(self):
        if self.code is not None:
            return f"{self.message} (code {self.code})"
        return self.message


class MiningStateUnavailable(PoolNodeError):
    """getmininginfo failed on every attempt of a refresh cycle."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        super().__init__(
            f"getmininginfo failed after {attempts} attempts: {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


class TemplateUnavailableError(PoolNodeError):
    """Gave up obtaining a block template for a height."""

    def __init__(self, height: int, reason: str):
        super().__init__(f"template for height {height} unavailable: {reason}")
        self.height = height
        self.reason = reason
