"""Exceptions raised by steward workflows."""


class StewardError(Exception):
    """Base class for all steward errors."""


class ValidationError(StewardError):
    """Bad operator input: name, selection, path or port."""


class PortUnavailableError(ValidationError):
    """A requested port failed validation or a range had no free port."""

    def __init__(self, message: str, check=None):
        super().__init__(message)
        self.check = check


class PreconditionError(StewardError):
    """The operation is not allowed in the registry's current state."""


class FatalStartupError(StewardError):
    """Steward must not continue running (e.g. started as root)."""


class RegistryLockedError(FatalStartupError):
    """Another steward process already holds the registry lock."""
