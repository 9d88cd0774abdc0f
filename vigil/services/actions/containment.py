"""Remediation actions: IP blocking and host isolation, both reversible."""

import json
import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Literal, Protocol

from pydantic import BaseModel, Field, IPvAnyAddress, model_validator
from redis.asyncio import Redis

from vigil.core.exceptions import ActionExecutionError
from vigil.services.actions.base import Action, ActionContext

logger = logging.getLogger(__name__)


class ContainmentBackend(Protocol):
    """Where enforcement points read blocked IPs and isolated hosts from."""

    async def block_ip(self, organization_id: int, ip: str, reason: str, ttl_seconds: int | None) -> str: ...

    async def unblock_ip(self, organization_id: int, ip: str) -> bool: ...

    async def isolate_host(self, organization_id: int, host: str, reason: str, ttl_seconds: int | None) -> str: ...

    async def release_host(self, organization_id: int, host: str) -> bool: ...


class RedisContainmentBackend:
    """Containment state as Redis keys, expiring with the block/isolation duration."""

    KEY_PREFIX = "vigil:containment:"

    def __init__(self, redis: Redis):
        self.redis = redis

    def _key(self, organization_id: int, kind: str, value: str) -> str:
        return f"{self.KEY_PREFIX}{organization_id}:{kind}:{value}"

    async def _set(self, key: str, reason: str, ttl_seconds: int | None) -> str:
        entry_id = uuid.uuid4().hex
        await self.redis.set(
            key,
            json.dumps({"id": entry_id, "reason": reason, "created_at": datetime.now(UTC).isoformat()}),
            ex=ttl_seconds,
        )
        return entry_id

    async def block_ip(self, organization_id: int, ip: str, reason: str, ttl_seconds: int | None) -> str:
        return await self._set(self._key(organization_id, "blocked-ip", ip), reason, ttl_seconds)

    async def unblock_ip(self, organization_id: int, ip: str) -> bool:
        return bool(await self.redis.delete(self._key(organization_id, "blocked-ip", ip)))

    async def isolate_host(self, organization_id: int, host: str, reason: str, ttl_seconds: int | None) -> str:
        return await self._set(self._key(organization_id, "isolated-host", host), reason, ttl_seconds)

    async def release_host(self, organization_id: int, host: str) -> bool:
        return bool(await self.redis.delete(self._key(organization_id, "isolated-host", host)))


def _expires_at(ttl_seconds: int | None) -> str | None:
    if ttl_seconds is None:
        return None
    return (datetime.now(UTC) + timedelta(seconds=ttl_seconds)).isoformat()


class BlockIpInputs(BaseModel):
    ip_address: IPvAnyAddress
    reason: str = Field(..., min_length=1)
    duration_minutes: int | None = Field(None, gt=0)
    direction: Literal["inbound", "outbound", "both"] = "both"


class BlockIpAction(Action):
    name = "block_ip"
    description = "Block an IP address at the network edge"
    category = "remediation"
    input_model = BlockIpInputs

    def __init__(self, backend: ContainmentBackend):
        self.backend = backend

    async def execute(self, inputs, context: ActionContext):
        params = self.parse_inputs(inputs)
        ip = params.ip_address

        if ip.is_loopback or ip.is_unspecified or ip.is_multicast:
            raise ActionExecutionError(self.name, f"refusing to block reserved address {ip}")
        if ip.is_private:
            logger.warning(f"Blocking private address {ip} (execution {context.execution_id})")

        ttl = params.duration_minutes * 60 if params.duration_minutes else None
        rule_id = await self.backend.block_ip(context.organization_id, str(ip), params.reason, ttl)
        logger.info(
            f"Blocked {ip} ({params.direction}) for org {context.organization_id}, rule {rule_id}, "
            f"duration {'permanent' if ttl is None else f'{params.duration_minutes}m'}"
        )
        return {
            "blocked_ip": str(ip),
            "rule_id": rule_id,
            "direction": params.direction,
            "expires_at": _expires_at(ttl),
            "reason": params.reason,
        }

    async def compensate(self, output, context: ActionContext) -> None:
        ip = output["blocked_ip"]
        await self.backend.unblock_ip(context.organization_id, ip)
        logger.info(f"Unblocked {ip} for org {context.organization_id} (rollback of execution {context.execution_id})")


class IsolateHostInputs(BaseModel):
    hostname: str | None = Field(None, min_length=1)
    host_id: str | None = Field(None, min_length=1)
    ip_address: IPvAnyAddress | None = None
    reason: str = Field(..., min_length=1)
    isolation_type: Literal["network", "full"] = "network"
    duration_hours: int | None = Field(None, gt=0)

    @model_validator(mode="after")
    def require_identifier(self):
        if not (self.hostname or self.host_id or self.ip_address):
            raise ValueError("one of hostname, host_id or ip_address is required")
        return self

    @property
    def host(self) -> str:
        return self.host_id or self.hostname or str(self.ip_address)


class IsolateHostAction(Action):
    name = "isolate_host"
    description = "Isolate a host from the network"
    category = "remediation"
    input_model = IsolateHostInputs

    def __init__(self, backend: ContainmentBackend, protected_hosts: set[str] | None = None):
        self.backend = backend
        self.protected_hosts = {h.lower() for h in protected_hosts or ()}

    async def execute(self, inputs, context: ActionContext):
        params = self.parse_inputs(inputs)
        host = params.host

        if host.lower() in self.protected_hosts:
            raise ActionExecutionError(self.name, f"host {host} is protected from isolation")

        ttl = params.duration_hours * 3600 if params.duration_hours else None
        isolation_id = await self.backend.isolate_host(context.organization_id, host, params.reason, ttl)
        logger.info(f"Isolated host {host} ({params.isolation_type}) for org {context.organization_id}")
        return {
            "host": host,
            "isolation_id": isolation_id,
            "isolation_type": params.isolation_type,
            "expires_at": _expires_at(ttl),
            "reason": params.reason,
        }

    async def compensate(self, output, context: ActionContext) -> None:
        host = output["host"]
        await self.backend.release_host(context.organization_id, host)
        logger.info(f"Released host {host} for org {context.organization_id} (rollback of execution {context.execution_id})")
