"""Exceptions raised by the nesting engine."""


class NestingError(Exception):
    """Base class for nesting engine errors."""
    pass


class InvalidConfigError(NestingError, ValueError):
    """Raised when a nesting request is rejected before packing starts."""
    pass


class NestingBusyError(NestingError):
    """Raised when a coordinator already has a job in flight."""
    pass


class OptimizerError(NestingError):
    """Raised by an advanced optimizer that cannot complete a run."""
    pass


class ProtocolError(NestingError, ValueError):
    """Raised when a worker message does not match the wire schema."""
    pass
