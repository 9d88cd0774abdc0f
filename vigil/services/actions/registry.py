"""Explicit registry of the actions playbook steps may reference."""

import logging

import httpx
from redis.asyncio import Redis

from vigil.core.exceptions import ActionNotFoundError
from vigil.services.actions.base import Action
from vigil.services.actions.containment import (
    BlockIpAction,
    ContainmentBackend,
    IsolateHostAction,
    RedisContainmentBackend,
)
from vigil.services.actions.notifications import (
    LogMessageAction,
    SlackNotificationAction,
    WebhookNotificationAction,
)

logger = logging.getLogger(__name__)


class ActionRegistry:
    """Mapping of action name to implementation, built once at startup."""

    def __init__(self):
        self._actions: dict[str, Action] = {}

    def register(self, action: Action) -> None:
        if not action.name:
            raise ValueError(f"{type(action).__name__} has no name")
        if action.name in self._actions:
            raise ValueError(f"Action '{action.name}' is already registered")
        self._actions[action.name] = action
        logger.debug(f"Registered action {action.name}")

    def get(self, name: str) -> Action:
        """
        Look up an action by name.

        Raises:
            ActionNotFoundError: If no action is registered under ``name``
        """
        action = self._actions.get(name)
        if action is None:
            raise ActionNotFoundError(name)
        return action

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    def names(self) -> list[str]:
        return sorted(self._actions)

    def catalog(self) -> list[dict]:
        return [self._actions[name].describe() for name in self.names()]


def build_default_registry(
    redis: Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
    containment: ContainmentBackend | None = None,
) -> ActionRegistry:
    """
    Build the registry of built-in actions.

    Args:
        redis: Client for the default containment backend (ignored when ``containment`` is given)
        http_client: Shared client for notification actions; one per call when omitted
        containment: Backend recording blocked IPs and isolated hosts
    """
    if containment is None:
        if redis is None:
            raise ValueError("build_default_registry needs a Redis client or a containment backend")
        containment = RedisContainmentBackend(redis)

    registry = ActionRegistry()
    registry.register(LogMessageAction())
    registry.register(BlockIpAction(containment))
    registry.register(IsolateHostAction(containment))
    registry.register(WebhookNotificationAction(http_client))
    registry.register(SlackNotificationAction(http_client))
    logger.info(f"Action registry ready: {', '.join(registry.names())}")
    return registry
