"""Tests for PushDispatcher delivery and cleanup."""

import asyncio
import json

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from holopush.notifications.codec import urlsafe_b64decode, urlsafe_b64encode
from holopush.notifications.errors import MalformedKeyError
from holopush.notifications.models import Subscription
from holopush.notifications.push import PushDispatcher
from holopush.notifications.store import (
    JsonFileBackend,
    SubscriptionStore,
    storage_key,
)
from holopush.notifications.vapid import VapidKeyPair

EP1 = "https://push.example/1"
EP2 = "https://other.example/2"
PAYLOAD = {"title": "New summary", "body": "Stream ended"}


async def _subscribe(store: SubscriptionStore, *endpoints: str) -> None:
    for ep in endpoints:
        await store.put(Subscription(endpoint=ep, keys={"p256dh": "k", "auth": "a"}))


class CountingStore(SubscriptionStore):
    """Store that records delete calls."""

    def __init__(self, backend) -> None:
        super().__init__(backend)
        self.deleted: list[str] = []

    async def delete(self, key: str) -> None:
        self.deleted.append(key)
        await super().delete(key)


class TestRequestShape:
    @pytest.mark.asyncio
    async def test_headers_and_body(self, dispatcher, store, push_service, vapid_keys):
        await _subscribe(store, EP1)

        result = await dispatcher.dispatch_to_all(PAYLOAD)

        assert result.sent == 1
        assert result.delivered == 1
        (req,) = push_service.requests
        assert req.method == "POST"
        assert str(req.url) == EP1
        assert req.headers["TTL"] == "60"
        assert req.headers["Content-Encoding"] == "aesgcm"
        assert req.headers["Crypto-Key"] == f"p256ecdsa={vapid_keys.public_key}"
        assert req.headers["Authorization"].startswith("WebPush ")
        assert json.loads(req.content) == PAYLOAD

    @pytest.mark.asyncio
    async def test_token_audience_is_endpoint_origin(self, dispatcher, store, push_service):
        await _subscribe(store, EP1, EP2)

        await dispatcher.dispatch_to_all(PAYLOAD)

        audiences = {}
        for req in push_service.requests:
            token = req.headers["Authorization"].removeprefix("WebPush ")
            claims = json.loads(urlsafe_b64decode(token.split(".")[1]))
            audiences[str(req.url)] = claims["aud"]
        assert audiences == {
            EP1: "https://push.example",
            EP2: "https://other.example",
        }

    @pytest.mark.asyncio
    async def test_no_subscribers(self, dispatcher, push_service):
        result = await dispatcher.dispatch_to_all(PAYLOAD)
        assert result.sent == 0
        assert push_service.requests == []


class TestFailureHandling:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 410])
    async def test_gone_removes_subscription(self, dispatcher, store, push_service, status):
        await _subscribe(store, EP1, EP2)
        push_service.statuses[EP2] = status

        result = await dispatcher.dispatch_to_all(PAYLOAD)

        assert result.sent == 2
        assert result.gone == 1
        assert [s.endpoint for _, s in await store.list_all()] == [EP1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 429, 500])
    async def test_other_errors_keep_subscription(
        self, dispatcher, store, push_service, status
    ):
        await _subscribe(store, EP1)
        push_service.statuses[EP1] = status

        result = await dispatcher.dispatch_to_all(PAYLOAD)

        assert result.sent == 1
        assert result.failed == 1
        assert len(await store.list_all()) == 1

    @pytest.mark.asyncio
    async def test_transport_error_keeps_subscription(self, store, vapid_keys):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == EP1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(201)

        await _subscribe(store, EP1, EP2)
        dispatcher = PushDispatcher(
            store, vapid_keys, "ops@example.com", transport=httpx.MockTransport(handler)
        )

        result = await dispatcher.dispatch_to_all(PAYLOAD)

        assert (result.sent, result.delivered, result.failed) == (2, 1, 1)
        assert len(await store.list_all()) == 2

    @pytest.mark.asyncio
    async def test_repeated_gone_deletes_once(self, tmp_path, vapid_keys, push_service):
        store = CountingStore(JsonFileBackend(tmp_path / "subs.json"))
        await _subscribe(store, EP1)
        push_service.statuses[EP1] = 410
        dispatcher = PushDispatcher(
            store, vapid_keys, "ops@example.com", transport=push_service.transport
        )

        first = await dispatcher.dispatch_to_all(PAYLOAD)
        second = await dispatcher.dispatch_to_all(PAYLOAD)

        assert first.sent == 1
        assert second.sent == 0
        assert store.deleted == [storage_key(EP1)]

    @pytest.mark.asyncio
    async def test_bad_keys_abort_before_delivery(self, store, push_service):
        await _subscribe(store, EP1)
        dispatcher = PushDispatcher(
            store,
            VapidKeyPair(public_key="", private_key=""),
            "ops@example.com",
            transport=push_service.transport,
        )

        with pytest.raises(MalformedKeyError):
            await dispatcher.dispatch_to_all(PAYLOAD)
        assert push_service.requests == []
        assert len(await store.list_all()) == 1


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_fan_out_is_bounded(self, store, vapid_keys):
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(201)

        await _subscribe(store, *(f"https://push.example/{i}" for i in range(6)))
        dispatcher = PushDispatcher(
            store,
            vapid_keys,
            "ops@example.com",
            concurrency=2,
            transport=httpx.MockTransport(handler),
        )

        result = await dispatcher.dispatch_to_all(PAYLOAD)

        assert result.delivered == 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_slow_subscriber_times_out(self, store, vapid_keys):
        async def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == EP1:
                await asyncio.sleep(5)
            return httpx.Response(201)

        await _subscribe(store, EP1, EP2)
        dispatcher = PushDispatcher(
            store,
            vapid_keys,
            "ops@example.com",
            timeout_s=0.05,
            transport=httpx.MockTransport(handler),
        )

        result = await dispatcher.dispatch_to_all(PAYLOAD)

        assert (result.delivered, result.failed) == (1, 1)
        assert len(await store.list_all()) == 2


def _browser_keys() -> dict[str, str]:
    """A p256dh/auth pair like a browser would register."""
    key = ec.generate_private_key(ec.SECP256R1())
    point = key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return {"p256dh": urlsafe_b64encode(point), "auth": urlsafe_b64encode(b"0123456789abcdef")}


class TestEncryptedPayload:
    @pytest.mark.asyncio
    async def test_encrypts_when_enabled(self, store, vapid_keys, push_service):
        await store.put(Subscription(endpoint=EP1, keys=_browser_keys()))
        dispatcher = PushDispatcher(
            store,
            vapid_keys,
            "ops@example.com",
            encrypt_payload=True,
            transport=push_service.transport,
        )

        result = await dispatcher.dispatch_to_all(PAYLOAD)

        assert result.delivered == 1
        (req,) = push_service.requests
        assert req.headers["Content-Encoding"] == "aesgcm"
        assert req.headers["Encryption"].startswith("salt=")
        crypto_key = req.headers["Crypto-Key"]
        assert crypto_key.startswith("dh=")
        assert crypto_key.endswith(f";p256ecdsa={vapid_keys.public_key}")
        assert b"New summary" not in req.content

    @pytest.mark.asyncio
    async def test_plaintext_without_browser_keys(self, store, vapid_keys, push_service):
        await store.put(Subscription(endpoint=EP1))
        dispatcher = PushDispatcher(
            store,
            vapid_keys,
            "ops@example.com",
            encrypt_payload=True,
            transport=push_service.transport,
        )

        await dispatcher.dispatch_to_all(PAYLOAD)

        (req,) = push_service.requests
        assert "Encryption" not in req.headers
        assert json.loads(req.content) == PAYLOAD
