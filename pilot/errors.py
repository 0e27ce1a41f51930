"""Exception types raised by the orchestration core.

The HTTP layer maps these onto status codes:
    InstructionRequiredError, UnknownBackendError -> 400
    SessionNotFoundError                          -> 404
    SessionBusyError, DesktopBusyError            -> 409
    RegistryFullError                             -> 429

``BackendError`` never reaches the HTTP layer directly: the Turn Loop turns
it into an ``error`` event on the stream.
"""


class PilotError(Exception):
    """Base class for all orchestration errors."""


class InstructionRequiredError(PilotError):
    """A new conversation was requested without an instruction."""

    def __init__(self, message: str = "Instruction is required to start a conversation"):
        super().__init__(message)


class SessionNotFoundError(PilotError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Conversation '{session_id}' not found")


class SessionBusyError(PilotError):
    """The conversation already has a Turn Loop invocation in flight."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Conversation '{session_id}' is already running")


class DesktopBusyError(PilotError):
    """The shared desktop is in use, or is being reset."""


class RegistryFullError(PilotError):
    """No room for another conversation and none could be evicted."""


class UnknownBackendError(PilotError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown decision backend: {name!r}")


class BackendError(PilotError):
    """A decision backend call failed (transport error, timeout or unparseable output)."""

    def __init__(self, backend: str, message: str):
        self.backend = backend
        super().__init__(f"[{backend}] {message}")
