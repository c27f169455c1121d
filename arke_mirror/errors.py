"""Error types for the Arke mirror."""


class MirrorError(Exception):
    """Base error for all mirror errors."""


class ConfigError(MirrorError):
    """Raised when the loaded configuration is invalid."""


class TransportError(MirrorError):
    """Raised for network failures and unexpected HTTP responses."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DecodeError(MirrorError):
    """Raised when a response body or stored record cannot be decoded."""


class PersistenceError(MirrorError):
    """Raised when the state record or replica log cannot be read or written."""


class ReplicaDivergedError(PersistenceError):
    """Raised when the state record could not be saved after the log changed.

    The on-disk log and the on-disk state no longer agree, so the process
    has to be restarted before it can continue.
    """

    def __init__(self, cause: PersistenceError):
        self.cause = cause
        super().__init__(
            f"Replica log was updated but state could not be saved: {cause}. "
            "Restart the mirror to recover."
        )
