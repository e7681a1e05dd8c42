"""Typed errors raised by the attachment storage core.

Each error carries the HTTP status the transport layer answers with, so the
FastAPI exception handler can translate them without a lookup table.
"""


class AttachmentError(Exception):
    """Base exception for attachment storage errors."""
    status_code: int = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or (self.__class__.__doc__ or "").strip()
        self.context = context


class PayloadTooLarge(AttachmentError):
    """Raised when an uploaded file exceeds the configured maximum size."""
    status_code = 413


class RemoteUnavailable(AttachmentError):
    """Raised when the remote object store cannot be reached or rejects a call."""
    status_code = 503


class PreviewUnavailable(AttachmentError):
    """Raised when an attachment has no usable backup payload."""
    status_code = 404


class AttachmentNotFound(AttachmentError):
    """Raised when an attachment does not exist."""
    status_code = 404


class InvalidTransition(AttachmentError):
    """Raised when a status change is not allowed from the current status."""
    status_code = 409


class RetryExhausted(AttachmentError):
    """Raised when an outbox action has used up its retry budget."""
    status_code = 409
