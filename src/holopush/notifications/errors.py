"""Error taxonomy for subscription handling and push delivery."""


class PushError(Exception):
    """Base class for push notification errors."""


class ClientInputError(PushError):
    """Request body is missing required subscription fields."""


class AuthError(PushError):
    """Broadcast caller presented a wrong bearer secret."""


class MalformedKeyError(PushError):
    """VAPID key material cannot be decoded."""


class SigningError(PushError):
    """VAPID token could not be signed with the configured keys."""


class DeliveryError(PushError):
    """Push service rejected a message for a non-terminal reason."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"push failed with status {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class SubscriberGoneError(DeliveryError):
    """Push service reports the subscription no longer exists (404/410)."""
