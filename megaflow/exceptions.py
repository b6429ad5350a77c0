"""Exceptions for megaflow."""


class MegaFlowError(Exception):
    """Base class for errors surfaced to the user."""


class NotFoundError(MegaFlowError):
    """Raised when a path or handle does not resolve to a node in the snapshot."""


class InvalidArgumentsError(MegaFlowError):
    """Raised for option combinations that have no defined meaning."""


class RemoteOperationFailed(MegaFlowError):
    """Raised when the remote storage client reports a failure.

    No retry happens at this layer; the client applies its own retry policy
    before giving up.
    """


class LocalIOFailed(MegaFlowError):
    """Raised when reading or writing the local filesystem fails during a job."""


class CastOverflow(MegaFlowError):
    """Raised when a numeric conversion falls outside the representable range."""
