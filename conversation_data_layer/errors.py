class DataLayerError(Exception):
    """Base class for errors raised by a data layer."""


class ReferentialViolation(DataLayerError):
    """A write referenced a parent entity that does not exist."""


class UnsupportedOperation(DataLayerError):
    """The active backend cannot honour the requested filter or capability."""


class StorageBackendFailure(DataLayerError):
    """The underlying engine or object store rejected or failed an operation.

    The engine-specific exception is chained as ``__cause__``. For partial
    cascade failures the cause is an ``ExceptionGroup`` holding every
    individual failure.
    """
