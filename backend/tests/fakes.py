from __future__ import annotations

import asyncio
from typing import Any, Callable

from consult_ai.llm import PromptSegment
from consult_core.errors import ModelUnavailable

Reply = str | Exception | Callable[[list[PromptSegment]], str]


class FakeConnection:
    """Records every event sent to it, in order."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def send(self, event: str, data: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [event for event, _data in self.events]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.events if name == event]

    def clear(self) -> None:
        self.events.clear()


class FakeModel:
    """Language model double: answers from a script, then falls back to `default`.

    A scripted `Exception` is raised instead of returned; `offline=True` makes
    every call raise `ModelUnavailable`.
    """

    def __init__(self, script: list[Reply] | None = None, *, default: str = "Noted.", offline: bool = False) -> None:
        self.script: list[Reply] = list(script or [])
        self.default = default
        self.offline = offline
        self.calls: list[list[PromptSegment]] = []

    def queue(self, *replies: Reply) -> None:
        self.script.extend(replies)

    async def complete(self, segments: list[PromptSegment]) -> str:
        self.calls.append(list(segments))
        await asyncio.sleep(0)
        if self.offline:
            raise ModelUnavailable("fake model offline")
        reply: Reply = self.script.pop(0) if self.script else self.default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(segments)
        return reply

    def prompts_containing(self, text: str) -> list[list[PromptSegment]]:
        return [call for call in self.calls if any(text in segment.content for segment in call)]
