"""
Notification actions: log lines, generic webhooks and Slack messages.

Outbound URLs are checked against private and internal address ranges before
any request is made, to keep playbooks from being used for SSRF.
"""

import asyncio
import ipaddress
import logging
import socket
from contextlib import asynccontextmanager
from typing import Any, Literal
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from vigil.core.exceptions import ActionExecutionError
from vigil.services.actions.base import Action, ActionContext

logger = logging.getLogger(__name__)


# Private/internal IP ranges that should be blocked for SSRF protection
BLOCKED_IP_RANGES = [
    ipaddress.ip_network("127.0.0.0/8"),       # Loopback
    ipaddress.ip_network("10.0.0.0/8"),        # Private Class A
    ipaddress.ip_network("172.16.0.0/12"),     # Private Class B
    ipaddress.ip_network("192.168.0.0/16"),    # Private Class C
    ipaddress.ip_network("169.254.0.0/16"),    # Link-local (cloud metadata)
    ipaddress.ip_network("::1/128"),           # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),          # IPv6 private
    ipaddress.ip_network("fe80::/10"),         # IPv6 link-local
]


def sanitize_url(url: str) -> tuple[str | None, str]:
    """
    Validate an outbound URL and rebuild it from its checked components.

    Resolves the hostname; any address inside BLOCKED_IP_RANGES rejects the
    URL. DNS failures are allowed through, the request itself will fail.

    Returns:
        Tuple of (sanitized_url or None, error_message)
    """
    try:
        parsed = urlparse(url)
    except ValueError as e:
        return None, f"Invalid URL: {e}"

    if parsed.scheme not in ("http", "https"):
        return None, "URL scheme must be http or https"

    hostname = parsed.hostname
    if not parsed.netloc or not hostname:
        return None, "URL must have a valid hostname"

    if hostname in ("localhost", "0.0.0.0"):
        return None, "Localhost URLs are not allowed"

    try:
        addr_info = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC)
    except socket.gaierror:
        addr_info = []

    for _, _, _, _, sockaddr in addr_info:
        try:
            ip = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if any(ip in blocked for blocked in BLOCKED_IP_RANGES):
            return None, "URL resolves to a private/internal IP address"

    scheme = "https" if parsed.scheme == "https" else "http"
    path = parsed.path or "/"
    query = f"?{parsed.query}" if parsed.query else ""
    return f"{scheme}://{parsed.netloc}{path}{query}", ""


def mask_url(url: str) -> str:
    """Keep scheme and host only; webhook paths usually embed secrets."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.hostname}/***"


class _HttpAction(Action):
    """Shared plumbing for actions that POST to an external endpoint."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client = client

    @asynccontextmanager
    async def _http(self):
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient() as client:
                yield client

    async def _checked_url(self, url: str) -> str:
        sanitized, error = await asyncio.to_thread(sanitize_url, url)
        if sanitized is None:
            logger.warning(f"{self.name}: URL blocked (SSRF protection): {error}")
            raise ActionExecutionError(self.name, f"URL rejected: {error}")
        return sanitized

    async def _send(
        self,
        url: str,
        payload: Any,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        retries: int = 0,
    ) -> httpx.Response:
        last_error = ""
        async with self._http() as client:
            for attempt in range(retries + 1):
                if attempt:
                    await asyncio.sleep(0.5 * attempt)
                try:
                    response = await client.request(
                        method,
                        url,
                        json=payload,
                        headers={"Content-Type": "application/json", **(headers or {})},
                        timeout=timeout,
                    )
                except httpx.TimeoutException:
                    last_error = "request timed out"
                    continue
                except httpx.HTTPError as e:
                    last_error = type(e).__name__
                    continue

                if response.status_code < 400:
                    return response
                last_error = f"{mask_url(url)} returned {response.status_code}"
                if response.status_code < 500:
                    break

        raise ActionExecutionError(self.name, last_error)


class LogMessageInputs(BaseModel):
    message: str = Field(..., min_length=1)
    level: Literal["debug", "info", "warning", "error"] = "info"


class LogMessageAction(Action):
    name = "log_message"
    description = "Write a message to the playbook log"
    category = "utility"
    input_model = LogMessageInputs

    async def execute(self, inputs, context: ActionContext):
        params = self.parse_inputs(inputs)
        getattr(logger, params.level)(
            f"[playbook {context.playbook_id} execution {context.execution_id} step {context.step_key}] "
            f"{params.message}"
        )
        return {"logged": True, "message": params.message, "level": params.level}


class WebhookInputs(BaseModel):
    url: str = Field(..., min_length=1)
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)
    timeout_ms: int = Field(10000, ge=1000, le=30000)
    retries: int = Field(0, ge=0, le=5)


class WebhookNotificationAction(_HttpAction):
    name = "webhook_notification"
    description = "Send a JSON payload to an external webhook"
    category = "notification"
    input_model = WebhookInputs

    async def execute(self, inputs, context: ActionContext):
        params = self.parse_inputs(inputs)
        url = await self._checked_url(params.url)

        payload = {
            "organization_id": context.organization_id,
            "playbook_id": context.playbook_id,
            "execution_id": context.execution_id,
            **params.payload,
        }
        response = await self._send(
            url,
            payload,
            method=params.method,
            headers=params.headers,
            timeout=params.timeout_ms / 1000,
            retries=params.retries,
        )
        logger.info(f"Webhook delivered to {mask_url(url)}: {response.status_code}")
        return {"url": mask_url(url), "method": params.method, "status_code": response.status_code}


class SlackInputs(BaseModel):
    webhook_url: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    channel: str | None = None
    username: str = "Vigil"
    icon_emoji: str = ":shield:"
    attachments: list[dict[str, Any]] = Field(default_factory=list)


class SlackNotificationAction(_HttpAction):
    name = "slack_notification"
    description = "Post a message to Slack through an incoming webhook"
    category = "notification"
    input_model = SlackInputs

    async def execute(self, inputs, context: ActionContext):
        params = self.parse_inputs(inputs)
        url = await self._checked_url(params.webhook_url)

        payload: dict[str, Any] = {
            "text": params.message,
            "username": params.username,
            "icon_emoji": params.icon_emoji,
        }
        if params.channel:
            payload["channel"] = params.channel
        if params.attachments:
            payload["attachments"] = params.attachments

        response = await self._send(url, payload)
        logger.info(f"Slack message sent to {params.channel or 'default channel'}")
        return {"channel": params.channel, "status_code": response.status_code}
