"""Exception hierarchy for dillingerCore."""


class DillingerError(Exception):
    """Base exception for all dillingerCore errors."""


class ValidationError(DillingerError, ValueError):
    """Input rejected before any I/O (resource limits, missing fields, filenames)."""


class InvalidTransitionError(DillingerError):
    """A session or installation record was asked to move to a state it cannot reach."""


class RuntimeEngineError(DillingerError):
    """The container engine refused or failed an operation."""


class ContainerNotFoundError(RuntimeEngineError):
    """The addressed container no longer exists."""


class ImageNotFoundError(RuntimeEngineError):
    """The requested image is not available locally or in the registry."""


class LaunchError(RuntimeEngineError):
    """A play, install or debug container could not be brought up."""


class DownloadError(DillingerError):
    """A file transfer failed (stream break, non-2xx status)."""


class TooManyRedirectsError(DownloadError):
    """A redirect chain exceeded the configured bound."""


class DownloadCancelled(DillingerError):
    """Raised inside a worker when its cancellation flag is set."""


class PairingError(DillingerError):
    """The streaming sidecar could not be reached or answered garbage."""
