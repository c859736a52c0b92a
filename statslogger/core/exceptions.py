"""
Application-specific exceptions to keep error handling consistent.
"""

class AppError(Exception):
    """Base app error."""
    pass

class InvalidPayload(AppError):
    """Raised when a request body or field cannot be turned into a record."""
    pass

class SinkError(AppError):
    """Raised when the sink cannot be opened, written or closed. Fatal to the writer."""
    pass

class DownstreamError(AppError):
    """Raised by forwarding sinks when the downstream saver rejects one record."""
    pass

class WriterClosedError(AppError):
    """Raised when a record is submitted to a writer that no longer accepts work."""
    pass
