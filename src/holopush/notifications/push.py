"""Web Push broadcast delivery with dead-subscription cleanup."""

import asyncio
import json
from enum import StrEnum
from typing import Any

import httpx
import structlog
from pywebpush import WebPusher, WebPushException

from holopush.notifications.errors import (
    DeliveryError,
    SubscriberGoneError,
)
from holopush.notifications.models import DispatchResult, Subscription
from holopush.notifications.store import SubscriptionStore
from holopush.notifications.vapid import (
    VapidKeyPair,
    audience_for,
    sign_vapid_token,
)

logger = structlog.get_logger()

CONTENT_ENCODING = "aesgcm"

_GONE_STATUSES = {404, 410}


class Outcome(StrEnum):
    """Result of one delivery attempt."""

    DELIVERED = "delivered"
    GONE = "gone"
    FAILED = "failed"


def _text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class PushDispatcher:
    """Broadcast a payload to every stored subscription.

    Each dispatch re-reads the store, signs one VAPID token per push
    service origin, then delivers to all subscribers concurrently
    (bounded by ``concurrency``, each capped at ``timeout_s``).
    Subscriptions the push service reports as 404/410 are deleted;
    other failures are logged and the subscription is kept.
    Delivery is a single best-effort attempt, never retried.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        keys: VapidKeyPair,
        contact: str,
        *,
        ttl: int = 60,
        concurrency: int = 16,
        timeout_s: float = 10.0,
        encrypt_payload: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._keys = keys
        self._contact = contact
        self._ttl = ttl
        self._concurrency = max(1, concurrency)
        self._timeout_s = timeout_s
        self._encrypt_payload = encrypt_payload
        self._transport = transport

    @property
    def public_key(self) -> str:
        return self._keys.public_key

    async def dispatch_to_all(self, payload: Any) -> DispatchResult:
        """Deliver ``payload`` (any JSON value) to all subscribers.

        Returns counters; ``sent`` is the number attempted.

        Raises:
            MalformedKeyError, SigningError: VAPID keys are unusable.
                Raised before any delivery is attempted.
        """
        entries = await self._store.list_all()
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

        tokens: dict[str, str] = {}
        for _, sub in entries:
            try:
                origin = audience_for(sub.endpoint)
            except ValueError:
                continue
            if origin not in tokens:
                tokens[origin] = sign_vapid_token(origin, self._keys, self._contact)

        slots = asyncio.Semaphore(self._concurrency)
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self._timeout_s,
        ) as client:
            outcomes = await asyncio.gather(
                *(
                    self._send_one(client, slots, key, sub, tokens, body)
                    for key, sub in entries
                )
            )

        result = DispatchResult(sent=len(entries))
        for outcome in outcomes:
            if outcome is Outcome.DELIVERED:
                result.delivered += 1
            elif outcome is Outcome.GONE:
                result.gone += 1
            else:
                result.failed += 1
        logger.info(
            "dispatch_finished",
            sent=result.sent,
            delivered=result.delivered,
            gone=result.gone,
            failed=result.failed,
        )
        return result

    async def _send_one(
        self,
        client: httpx.AsyncClient,
        slots: asyncio.Semaphore,
        key: str,
        sub: Subscription,
        tokens: dict[str, str],
        body: str,
    ) -> Outcome:
        """Deliver to one subscriber, absorbing every per-subscriber failure."""
        async with slots:
            try:
                token = tokens[audience_for(sub.endpoint)]
                await asyncio.wait_for(
                    self._deliver(client, sub, token, body),
                    self._timeout_s,
                )
            except SubscriberGoneError as e:
                logger.info(
                    "push_endpoint_gone",
                    key=key,
                    status=e.status_code,
                )
                await self._forget(key)
                return Outcome.GONE
            except DeliveryError as e:
                logger.warning(
                    "push_failed",
                    key=key,
                    endpoint=sub.endpoint,
                    status=e.status_code,
                    body=e.body,
                )
                return Outcome.FAILED
            except (httpx.HTTPError, TimeoutError) as e:
                logger.warning(
                    "push_transport_failed",
                    key=key,
                    endpoint=sub.endpoint,
                    error=repr(e),
                )
                return Outcome.FAILED
            except (WebPushException, ValueError) as e:
                logger.warning(
                    "push_payload_rejected",
                    key=key,
                    endpoint=sub.endpoint,
                    error=str(e),
                )
                return Outcome.FAILED
        logger.debug("push_sent", key=key)
        return Outcome.DELIVERED

    async def _forget(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except Exception:
            logger.exception("push_cleanup_failed", key=key)

    def _build_request(
        self,
        sub: Subscription,
        token: str,
        body: str,
    ) -> tuple[dict[str, str], bytes]:
        """Web Push headers and body for one subscriber."""
        headers = {
            "TTL": str(self._ttl),
            "Authorization": f"WebPush {token}",
            "Content-Encoding": CONTENT_ENCODING,
            "Crypto-Key": f"p256ecdsa={self._keys.public_key}",
        }
        keys = sub.keys or {}
        if not (self._encrypt_payload and keys.get("p256dh") and keys.get("auth")):
            return headers, body.encode()

        encoded = WebPusher(
            {"endpoint": sub.endpoint, "keys": keys}
        ).encode(body.encode(), content_encoding=CONTENT_ENCODING)
        headers["Crypto-Key"] = (
            f"dh={_text(encoded['crypto_key'])};p256ecdsa={self._keys.public_key}"
        )
        headers["Encryption"] = f"salt={_text(encoded['salt'])}"
        return headers, encoded["body"]

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        sub: Subscription,
        token: str,
        body: str,
    ) -> None:
        headers, content = self._build_request(sub, token, body)
        resp = await client.post(sub.endpoint, headers=headers, content=content)
        if resp.is_success:
            return
        if resp.status_code in _GONE_STATUSES:
            raise SubscriberGoneError(resp.status_code, resp.text)
        raise DeliveryError(resp.status_code, resp.text)
