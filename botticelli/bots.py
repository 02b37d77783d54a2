"""Bot command registry.

Platform integrations register one async handler per platform:

    async def handler(command: str, args: dict) -> Any: ...

The resolver calls BotRegistry.execute() for every `bots.x` input. Handlers
return any JSON-serialisable value; failures surface as BotCommandError.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

BotHandler = Callable[[str, dict[str, Any]], Awaitable[Any]]

# Leading verbs of commands that change state on the platform.
WRITE_VERBS = (
    "send", "post", "create", "delete", "remove", "update", "edit",
    "ban", "kick", "pin", "unpin", "add", "set", "publish", "react",
)


class BotCommandError(RuntimeError):
    """Raised when a bot command cannot be executed."""


def is_write_command(command: str) -> bool:
    """True when the last segment of a dotted command starts with a write verb.

    `messages.send`, `channels.create_thread` and `roles.add_member` are
    writes; `server.get_stats` and `messages.list` are not.
    """
    action = command.rsplit(".", 1)[-1].lower()
    return any(action == verb or action.startswith(f"{verb}_") for verb in WRITE_VERBS)


class BotRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, BotHandler] = {}

    def register(self, platform: str, handler: BotHandler) -> None:
        self._handlers[platform] = handler

    def platforms(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, platform: str, command: str, args: dict[str, Any]) -> Any:
        handler = self._handlers.get(platform)
        if handler is None:
            raise BotCommandError(f"No handler registered for platform '{platform}'")
        logger.debug("bot command %s.%s args=%s", platform, command, args)
        try:
            return await handler(command, args)
        except BotCommandError:
            raise
        except Exception as e:
            raise BotCommandError(f"{platform}.{command} failed: {e}") from e
