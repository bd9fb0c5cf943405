"""Pages controlled by the worker and the messages posted to them."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger()

Message = dict[str, Any]


@dataclass
class Client:
    """An open page. ``inbox`` collects every message posted to it."""

    url: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    controller: str | None = None
    inbox: list[Message] = field(default_factory=list)
    listeners: list[Callable[[Message], None]] = field(default_factory=list)

    def post_message(self, message: Message) -> None:
        self.inbox.append(message)
        for listener in self.listeners:
            listener(message)


class Clients:
    def __init__(self) -> None:
        self._clients: dict[str, Client] = {}

    def open(self, url: str) -> Client:
        client = Client(url=url)
        self._clients[client.id] = client
        return client

    def close(self, client_id: str) -> None:
        self._clients.pop(client_id, None)

    def match_all(self) -> list[Client]:
        return list(self._clients.values())

    def claim(self, version: str) -> int:
        """Make ``version`` the controller of every open page."""
        for client in self._clients.values():
            client.controller = version
        return len(self._clients)

    def post_all(self, message: Message) -> None:
        for client in self._clients.values():
            client.post_message(message)
        logger.debug("message_posted", type=message.get("type"), clients=len(self._clients))
