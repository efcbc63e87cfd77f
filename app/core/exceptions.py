"""
Push Service Errors

Exception taxonomy shared by the token registry, the delivery engine,
and the HTTP layer. app/main.py maps each class onto a status code.

Per-token delivery failures are not in this list on purpose: they are
DeliveryOutcome values routed to the lifecycle manager, never raised
past the delivery engine.
"""


class PushServiceError(Exception):
    """Base class for all errors raised by the push notification core."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PushServiceError):
    """Malformed request: missing recipient, token, title, or body."""

    status_code = 422


class NotFoundError(PushServiceError):
    """Referenced recipient, token pair, or notification does not exist."""

    status_code = 404


class GatewayError(PushServiceError):
    """
    The push transport failed before producing per-token outcomes.

    Raised for network errors, authentication failures, and timeouts.
    Callers may retry the whole dispatch later.
    """

    status_code = 503

    def __init__(self, message: str, *, notification_id: str | None = None):
        super().__init__(message)
        self.notification_id = notification_id


class StorageError(PushServiceError):
    """The document store rejected or failed a read/write."""

    status_code = 500


class TokenRejectedError(PushServiceError):
    """
    A gateway refused delivery to one specific token.

    Raised by a gateway's single-send operation only. The delivery
    engine converts it into a failed DeliveryOutcome.
    """

    status_code = 502

    def __init__(self, message: str, *, error_code: str | None, error_class: str):
        super().__init__(message)
        self.error_code = error_code
        self.error_class = error_class
