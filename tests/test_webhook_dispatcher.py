"""
Business webhook dispatcher tests
Signing, single-attempt delivery, and tracking-field updates
"""

import asyncio
import hashlib
import hmac
from unittest.mock import AsyncMock, patch

import aiohttp
import orjson
import pytest

from models import OfframpOrderStatus
from services.order_repository import OfframpOrderRepository
from services.webhook_dispatcher import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    BusinessWebhookDispatcher,
    build_webhook_body,
    sign_payload,
)
from services.webhook_security_service import validate_webhook_signature
from tests.conftest import TestConfig

URL = "https://merchant.example.com/hooks/offramp"


def _response(status):
    mock_response = AsyncMock()
    mock_response.status = status
    return mock_response


@pytest.fixture
def live_dispatcher(session_factory):
    return BusinessWebhookDispatcher(session_factory=session_factory, config=TestConfig)


class TestSigning:
    """HMAC-SHA256 over the exact body bytes"""

    def test_signature_format(self):
        """sha256=<64 hex chars>"""
        signature = sign_payload(b'{"a":1}', "secret")
        expected = hmac.new(b"secret", b'{"a":1}', hashlib.sha256).hexdigest()
        assert signature == f"sha256={expected}"

    def test_signature_verifies_and_detects_tampering(self):
        """The receiving side accepts the original body only"""
        body = build_webhook_body("order.completed", {"order_id": "OFF_1"})
        signature = sign_payload(body, "secret")
        assert validate_webhook_signature(body, signature, "secret")
        assert not validate_webhook_signature(body + b" ", signature, "secret")
        assert not validate_webhook_signature(body, signature, "other-secret")

    def test_envelope_shape(self):
        """{event, timestamp, data}"""
        envelope = orjson.loads(build_webhook_body("order.expired", {"order_id": "OFF_1"}))
        assert envelope["event"] == "order.expired"
        assert envelope["data"] == {"order_id": "OFF_1"}
        assert "timestamp" in envelope


class TestNotify:
    """Single POST attempt"""

    @pytest.mark.asyncio
    async def test_delivered_on_2xx(self, live_dispatcher):
        """Signed POST with event header; 2xx is delivered"""
        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.return_value = _response(204)
            result = await live_dispatcher.notify(URL, "order.completed", {"order_id": "OFF_1"})

        assert result.delivered is True
        assert result.status_code == 204

        args, kwargs = mock_post.call_args
        assert args[0] == URL
        headers = kwargs["headers"]
        assert headers[EVENT_HEADER] == "order.completed"
        assert validate_webhook_signature(kwargs["data"], headers[SIGNATURE_HEADER], TestConfig.WEBHOOK_SECRET)

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self, live_dispatcher):
        """HTTP 500 is recorded as an error, not raised"""
        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.return_value = _response(500)
            result = await live_dispatcher.notify(URL, "order.failed", {})

        assert result.delivered is False
        assert result.status_code == 500
        assert result.error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, live_dispatcher):
        """Timeouts never propagate"""
        with patch('aiohttp.ClientSession.post', side_effect=asyncio.TimeoutError()):
            result = await live_dispatcher.notify(URL, "order.failed", {})
        assert result.delivered is False
        assert result.error.startswith("Timeout")

    @pytest.mark.asyncio
    async def test_connection_error_is_failure(self, live_dispatcher):
        """Connection errors never propagate"""
        with patch('aiohttp.ClientSession.post', side_effect=aiohttp.ClientConnectionError("refused")):
            result = await live_dispatcher.notify(URL, "order.failed", {})
        assert result.delivered is False
        assert "refused" in result.error


class TestDispatchTracking:
    """Background delivery updates tracking fields only"""

    @pytest.mark.asyncio
    async def test_successful_delivery_recorded(self, live_dispatcher, order_factory, session_factory):
        """attempts=1, last_status=delivered, lifecycle fields untouched"""
        order = await order_factory(webhook_last_status="pending")
        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.return_value = _response(200)
            task = live_dispatcher.dispatch(order.order_id, URL, "order.created", {"order_id": order.order_id})
            assert task is not None
            await live_dispatcher.drain()

        async with session_factory() as session:
            stored = await OfframpOrderRepository(session).get(order.order_id)
        assert stored.webhook_attempts == 1
        assert stored.webhook_last_status == "delivered"
        assert stored.webhook_last_error is None
        assert stored.webhook_last_attempt_at is not None
        assert stored.status == OfframpOrderStatus.PENDING_DEPOSIT.value
        assert stored.updated_at == order.updated_at
        assert live_dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_failed_delivery_recorded(self, live_dispatcher, order_factory, session_factory):
        """A failed delivery sets last_status=failed with the error"""
        order = await order_factory()
        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.return_value = _response(503)
            live_dispatcher.dispatch(order.order_id, URL, "order.processing", {})
            await live_dispatcher.drain()

        async with session_factory() as session:
            stored = await OfframpOrderRepository(session).get(order.order_id)
        assert stored.webhook_last_status == "failed"
        assert stored.webhook_last_error == "HTTP 503"
        assert stored.status == OfframpOrderStatus.PENDING_DEPOSIT.value

    @pytest.mark.asyncio
    async def test_no_url_is_noop(self, live_dispatcher):
        """No webhook URL means nothing is scheduled"""
        with patch('aiohttp.ClientSession.post') as mock_post:
            assert live_dispatcher.dispatch("OFF_1", None, "order.created", {}) is None
            await live_dispatcher.drain()
        mock_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispatch_does_not_block(self, live_dispatcher, order_factory):
        """dispatch returns before the slow endpoint answers"""
        order = await order_factory()
        release = asyncio.Event()

        async def slow_enter(*args, **kwargs):
            await release.wait()
            return _response(200)

        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.side_effect = slow_enter
            live_dispatcher.dispatch(order.order_id, URL, "order.created", {})
            await asyncio.sleep(0)
            assert live_dispatcher.pending == 1
            release.set()
            await live_dispatcher.drain()
        assert live_dispatcher.pending == 0


class AlertConfig(TestConfig):
    INTERNAL_NOTIFICATION_WEBHOOK_URL = "https://ops.example.com/hooks/offramp"


class TestOperatorAlerts:
    """Review alerts to the internal notification URL"""

    @pytest.mark.asyncio
    async def test_alert_posts_signed_event(self, session_factory):
        """Alerts go to the ops URL as offramp_alert.<type>"""
        dispatcher = BusinessWebhookDispatcher(session_factory=session_factory, config=AlertConfig)
        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.return_value = _response(200)
            task = dispatcher.alert("amount_mismatch", {"order_id": "OFF_1", "requires_review": True})
            await dispatcher.drain()

        assert task is not None
        args, kwargs = mock_post.call_args
        assert args[0] == AlertConfig.INTERNAL_NOTIFICATION_WEBHOOK_URL
        assert kwargs["headers"][EVENT_HEADER] == "offramp_alert.amount_mismatch"
        body = orjson.loads(kwargs["data"])
        assert body["data"]["order_id"] == "OFF_1"

    @pytest.mark.asyncio
    async def test_alert_without_url_is_noop(self, live_dispatcher):
        """No ops URL configured: nothing is scheduled"""
        with patch('aiohttp.ClientSession.post') as mock_post:
            assert live_dispatcher.alert("amount_mismatch", {}) is None
        mock_post.assert_not_called()
        assert live_dispatcher.pending == 0
