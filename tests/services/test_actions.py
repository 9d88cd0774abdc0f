"""Tests for the action registry and the built-in actions."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from vigil.core.exceptions import ActionExecutionError, ActionNotFoundError
from vigil.services.actions.base import ActionContext
from vigil.services.actions.containment import BlockIpAction, IsolateHostAction, RedisContainmentBackend
from vigil.services.actions.notifications import (
    LogMessageAction,
    SlackNotificationAction,
    WebhookNotificationAction,
    mask_url,
    sanitize_url,
)
from vigil.services.actions.registry import ActionRegistry, build_default_registry
from tests.fakes import FakeContainment

CONTEXT = ActionContext(organization_id=1, playbook_id=7, execution_id=3, step_key="s1")


def _client(status_code=200):
    client = MagicMock(spec=httpx.AsyncClient)
    client.request = AsyncMock(return_value=httpx.Response(status_code))
    return client


class TestRegistry:
    def test_default_registry_contents(self, actions):
        assert actions.names() == [
            "block_ip",
            "isolate_host",
            "log_message",
            "slack_notification",
            "webhook_notification",
        ]

    def test_catalog_marks_compensable_actions(self, actions):
        catalog = {entry["name"]: entry for entry in actions.catalog()}
        assert catalog["block_ip"]["compensable"] is True
        assert catalog["isolate_host"]["compensable"] is True
        assert catalog["log_message"]["compensable"] is False
        assert "ip_address" in catalog["block_ip"]["inputs"]["properties"]

    def test_unknown_action(self, actions):
        with pytest.raises(ActionNotFoundError):
            actions.get("nope")

    def test_duplicate_registration_is_rejected(self):
        registry = ActionRegistry()
        registry.register(LogMessageAction())
        with pytest.raises(ValueError):
            registry.register(LogMessageAction())

    def test_needs_a_containment_backend(self):
        with pytest.raises(ValueError):
            build_default_registry()

    def test_redis_backend_by_default(self):
        registry = build_default_registry(redis=AsyncMock())
        assert isinstance(registry.get("block_ip").backend, RedisContainmentBackend)


class TestBlockIp:
    @pytest.mark.asyncio
    async def test_block_and_compensate(self, containment):
        action = BlockIpAction(containment)

        output = await action.execute(
            {"ip_address": "203.0.113.9", "reason": "brute force", "duration_minutes": 60}, CONTEXT
        )

        assert output["blocked_ip"] == "203.0.113.9"
        assert output["expires_at"] is not None
        assert (1, "203.0.113.9") in containment.blocked

        await action.compensate(output, CONTEXT)
        assert containment.blocked == {}

    @pytest.mark.asyncio
    async def test_reserved_addresses_are_refused(self, containment):
        with pytest.raises(ActionExecutionError):
            await BlockIpAction(containment).execute({"ip_address": "127.0.0.1", "reason": "x"}, CONTEXT)

    @pytest.mark.asyncio
    async def test_invalid_inputs(self, containment):
        with pytest.raises(ActionExecutionError) as exc_info:
            await BlockIpAction(containment).execute({"ip_address": "not-an-ip"}, CONTEXT)
        assert "invalid inputs" in str(exc_info.value)
        assert "reason" in str(exc_info.value)


class TestIsolateHost:
    @pytest.mark.asyncio
    async def test_isolate_and_release(self):
        backend = FakeContainment()
        action = IsolateHostAction(backend)

        output = await action.execute({"hostname": "ws-17", "reason": "malware"}, CONTEXT)

        assert output["host"] == "ws-17"
        assert output["expires_at"] is None
        await action.compensate(output, CONTEXT)
        assert backend.isolated == {}

    @pytest.mark.asyncio
    async def test_requires_a_host_identifier(self):
        with pytest.raises(ActionExecutionError):
            await IsolateHostAction(FakeContainment()).execute({"reason": "malware"}, CONTEXT)

    @pytest.mark.asyncio
    async def test_protected_hosts(self):
        action = IsolateHostAction(FakeContainment(), protected_hosts={"DC-01"})
        with pytest.raises(ActionExecutionError):
            await action.execute({"hostname": "dc-01", "reason": "x"}, CONTEXT)


class TestRedisContainmentBackend:
    @pytest.mark.asyncio
    async def test_keys_expire_with_duration(self):
        redis = AsyncMock()
        backend = RedisContainmentBackend(redis)

        await backend.block_ip(1, "203.0.113.9", "x", 600)

        args, kwargs = redis.set.call_args
        assert args[0] == "vigil:containment:1:blocked-ip:203.0.113.9"
        assert kwargs["ex"] == 600


class TestNotifications:
    def test_sanitize_rejects_internal_targets(self):
        assert sanitize_url("http://localhost/hook")[0] is None
        assert sanitize_url("ftp://example.com/hook")[0] is None
        with patch("socket.getaddrinfo", return_value=[(None, None, None, None, ("10.0.0.5", 0))]):
            assert sanitize_url("https://internal.example/hook")[0] is None

    def test_sanitize_allows_public_targets(self):
        with patch("socket.getaddrinfo", return_value=[(None, None, None, None, ("93.184.216.34", 0))]):
            url, error = sanitize_url("https://hooks.example.com/services/abc?x=1")
        assert url == "https://hooks.example.com/services/abc?x=1"
        assert error == ""

    def test_mask_url(self):
        assert mask_url("https://hooks.slack.com/services/T0/B0/secret") == "https://hooks.slack.com/***"

    @pytest.mark.asyncio
    async def test_log_message(self):
        output = await LogMessageAction().execute({"message": "hello", "level": "warning"}, CONTEXT)
        assert output == {"logged": True, "message": "hello", "level": "warning"}

    @pytest.mark.asyncio
    async def test_webhook_posts_payload(self):
        client = _client(204)
        action = WebhookNotificationAction(client)

        with patch("vigil.services.actions.notifications.sanitize_url", return_value=("https://example.com/h", "")):
            output = await action.execute({"url": "https://example.com/h", "payload": {"alert": "42"}}, CONTEXT)

        assert output["status_code"] == 204
        assert output["url"] == "https://example.com/***"
        _, kwargs = client.request.call_args
        assert kwargs["json"]["alert"] == "42"
        assert kwargs["json"]["execution_id"] == 3

    @pytest.mark.asyncio
    async def test_webhook_error_status_fails_the_step(self):
        action = WebhookNotificationAction(_client(500))

        with patch("vigil.services.actions.notifications.sanitize_url", return_value=("https://example.com/h", "")):
            with pytest.raises(ActionExecutionError):
                await action.execute({"url": "https://example.com/h"}, CONTEXT)

    @pytest.mark.asyncio
    async def test_blocked_url_fails_without_request(self):
        client = _client()
        action = SlackNotificationAction(client)

        with pytest.raises(ActionExecutionError):
            await action.execute({"webhook_url": "http://localhost/x", "message": "hi"}, CONTEXT)
        client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slack_message(self):
        client = _client()
        action = SlackNotificationAction(client)

        with patch("vigil.services.actions.notifications.sanitize_url", return_value=("https://hooks.slack.com/x", "")):
            output = await action.execute(
                {"webhook_url": "https://hooks.slack.com/x", "message": "Blocked", "channel": "#soc"}, CONTEXT
            )

        assert output == {"channel": "#soc", "status_code": 200}
        _, kwargs = client.request.call_args
        assert kwargs["json"]["text"] == "Blocked"
        assert kwargs["json"]["username"] == "Vigil"
