"""
Error taxonomy shared by the store, registry, hub and dispatcher.

Every error carries a machine-readable ``code`` and, where the HTTP
API can return it, the status it maps to. WebSocket handlers send the
same code in an ``error`` frame.
"""


class ChatRelayError(Exception):
    """Base class for all errors raised by the delivery core."""

    code = "error"
    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.code


class Unauthorized(ChatRelayError):
    """Caller lacks membership of the channel or is not allowed to act."""

    code = "unauthorized"
    status_code = 403


class InvalidToken(Unauthorized):
    """Bearer token is missing, malformed or carries a bad signature."""

    code = "invalid_token"
    status_code = 401


class NotFound(ChatRelayError):
    """Channel, parent or connection does not exist."""

    code = "not_found"
    status_code = 404


class StoreUnavailable(ChatRelayError):
    """The message store could not durably complete the operation."""

    code = "store_unavailable"
    status_code = 503


class Overflow(ChatRelayError):
    """
    A subscriber's outbound queue exceeded its capacity. Only used as the
    WebSocket close reason, so it has no HTTP status of its own.
    """

    code = "overflow"


class Malformed(ChatRelayError):
    """Request content is invalid (empty, too large, wrong channel kind)."""

    code = "malformed"
    status_code = 422
