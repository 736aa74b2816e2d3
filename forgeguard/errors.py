"""
Guardian Errors
===============

Exception taxonomy shared by every ForgeGuard component.

Resource conflicts (a lock held by someone else, a write outside the assigned
workspace) are not errors: they come back as blocked decisions or failed
acquire results. Exceptions are reserved for malformed input and for state that
cannot be read or written.
"""


class GuardianError(Exception):
    """Base class for all ForgeGuard errors."""


class InputError(GuardianError):
    """A tool invocation payload is malformed or missing required fields."""


class StateCorruptionError(GuardianError):
    """A persisted document exists but cannot be decoded."""

    def __init__(self, key: str, detail: str = ""):
        self.key = key
        self.detail = detail
        message = f"State document '{key}' is corrupted"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PersistenceError(GuardianError):
    """State could not be written, or the storage lock could not be taken."""


class WorkspaceError(GuardianError):
    """An isolated workspace could not be created or the entity id is invalid."""
