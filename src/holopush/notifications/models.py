"""Pydantic models for push subscriptions."""

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator

from holopush.notifications.vapid import audience_for


class Subscription(BaseModel):
    """A browser's Web Push registration.

    Fields beyond endpoint and keys (e.g. expirationTime) are kept
    verbatim so the stored record matches what the browser sent.
    """

    model_config = ConfigDict(extra="allow")

    endpoint: str = Field(description="Push service delivery URL")
    keys: dict[str, str] | None = Field(
        default=None,
        description="Client public key (p256dh) and auth secret",
    )

    @field_validator("endpoint")
    @classmethod
    def endpoint_is_absolute_url(cls, v: str) -> str:
        audience_for(v)
        return v


class Unsubscribe(BaseModel):
    """Request to drop a subscription."""

    endpoint: str = Field(min_length=1)


@dataclass
class DispatchResult:
    """Outcome counters for one broadcast.

    ``sent`` counts attempts, not confirmed deliveries.
    """

    sent: int = 0
    delivered: int = 0
    gone: int = 0
    failed: int = 0
