from __future__ import annotations


class CodersError(RuntimeError):
    """Base class for errors raised by the session core."""


class SessionNotFoundError(CodersError, KeyError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "session not found"


class SpawnError(CodersError):
    """The tool process or its terminal could not be started."""


class StoreUnavailableError(CodersError):
    """The shared keyed store could not be read or written."""


class InvalidPromiseError(CodersError, ValueError):
    pass


class LoopAbortedError(CodersError):
    """A loop run could not continue (spawn failure, promise wait failure)."""
