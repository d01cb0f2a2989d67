class CodeloopError(Exception):
    """Base class for recoverable errors raised by the agent core."""


class ToolValidationError(CodeloopError):
    pass


class MalformedArgumentError(CodeloopError):
    pass


class NotFoundError(CodeloopError):
    pass


class AmbiguousMatchError(CodeloopError):
    pass


class ProtectedResourceError(CodeloopError):
    pass


class PathEscapeError(CodeloopError):
    def __init__(self, path: str):
        super().__init__(f"Path escapes project root: {path}")
        self.path = path


class CommandsUnsupportedError(CodeloopError):
    def __init__(self) -> None:
        super().__init__("Command execution is not available in this environment")


class MissingCredentialsError(CodeloopError):
    pass


class UpstreamProtocolError(CodeloopError):
    """Raised by the gateway adapter when an auxiliary upstream call fails."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class InteractionTimeoutError(CodeloopError):
    pass


class InteractionCancelledError(CodeloopError):
    pass
