"""Error taxonomy for conversation operations."""


class ChatError(Exception):
    """Base class for errors raised by the chat core."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class NotFoundError(ChatError):
    """Unknown conversation, message, assistant or model."""

    status_code = 404


class InvalidOperationError(ChatError):
    """Illegal tree mutation or malformed turn request."""

    status_code = 400


class RateLimitedError(ChatError):
    """Quota or request frequency exceeded."""

    status_code = 429


class PayloadTooLargeError(ChatError):
    """Attachment larger than the configured limit."""

    status_code = 413


class GenerationError(ChatError):
    """Generation backend failed mid-stream."""

    status_code = 502


class PersistenceError(ChatError):
    """A durable write was not acknowledged."""

    status_code = 500
