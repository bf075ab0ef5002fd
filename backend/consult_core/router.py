from __future__ import annotations

import asyncio
import re
from typing import Any, Coroutine

from consult_ai.documentation import generate_documentation
from consult_ai.emergency import EmergencyAssessment, detect_emergency
from consult_ai.llm import LanguageModel
from consult_ai.responder import AIResponder, build_ai_segments

from .connections import Connection, ConnectionDirectory
from .errors import Forbidden, ModelUnavailable, NotFound, ValidationError
from .log import logger
from .models import ROLE_DOCTOR, SPEAKER_AI, SPEAKER_SYSTEM, ConnectionBinding, Message, Room, speaker_for_role
from .store import SessionStore
from .time_utils import to_iso, utc_now

_log = logger(tag="router")

AI_MENTION = "@ai"
_AI_MENTION_RE = re.compile(re.escape(AI_MENTION), flags=re.IGNORECASE)
DOCUMENTATION_FAILED_MESSAGE = "Failed to generate documentation"
_PRIVATE_ALERT_FIELDS = ("matchedKeywords", "reasoning")


def mentions_ai(text: str) -> bool:
    return AI_MENTION in (text or "").lower()


def strip_ai_mention(text: str) -> str:
    return _AI_MENTION_RE.sub("", text or "").strip()


def emergency_notice_text(assessment: EmergencyAssessment) -> str:
    level = assessment.level or "HIGH"
    advice = assessment.urgent_advice or ""
    return f"🚨 {level} emergency indicators detected. {advice}".strip()


class MessageRouter:
    def __init__(self, store: SessionStore, directory: ConnectionDirectory, model: LanguageModel) -> None:
        self.store = store
        self.directory = directory
        self.model = model
        self.responder = AIResponder(model)
        self._tasks: set[asyncio.Task[Any]] = set()

    def _context(self, connection: Connection, room_id: str | None = None) -> tuple[ConnectionBinding, Room]:
        binding = self.directory.binding(connection.connection_id)
        if binding is None:
            raise ValidationError("Join a room before sending messages")
        if room_id and room_id != binding.room_id:
            raise Forbidden("Connection is not bound to this room")
        room = self.store.get_room(binding.room_id)
        if room is None:
            raise NotFound("Room not found")
        return binding, room

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)
        return task

    def _task_finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error("Background chat task failed: %r", exc)

    async def drain(self) -> None:
        """Wait for pending emergency checks and AI replies."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def handle_chat(
        self,
        connection: Connection,
        text: str | None,
        *,
        room_id: str | None = None,
        avatar_url: str | None = None,
    ) -> Message:
        binding, room = self._context(connection, room_id)
        text = (text or "").strip()
        if not text:
            raise ValidationError("message is required")

        wants_ai = mentions_ai(text)
        entry = room.append(
            Message(
                speaker_role=speaker_for_role(binding.role),
                nickname=binding.nickname,
                content=text,
                avatar_url=avatar_url or binding.avatar_url,
                for_role=binding.role if wants_ai else None,
                is_private=wants_ai,
            )
        )
        if wants_ai:
            await self.directory.deliver_message(room.room_id, entry, recipients=[connection.connection_id])
        else:
            await self.directory.deliver_message(room.room_id, entry)

        self._spawn(self._follow_up(connection, binding, text, wants_ai))
        return entry

    async def _follow_up(
        self,
        connection: Connection,
        binding: ConnectionBinding,
        text: str,
        wants_ai: bool,
    ) -> Message | None:
        assessment = await detect_emergency(self.model, text)
        room = self.store.get_room(binding.room_id)
        if room is None:
            _log.info("Room %s gone before chat follow-up", binding.room_id)
            return None
        if assessment.is_emergency:
            await self._raise_alert(room, connection, binding, assessment, private=wants_ai)
        if not wants_ai:
            return None
        return await self._answer(
            connection,
            binding,
            room,
            strip_ai_mention(text) or text,
            assessment if assessment.is_emergency else None,
        )

    async def _raise_alert(
        self,
        room: Room,
        connection: Connection,
        binding: ConnectionBinding,
        assessment: EmergencyAssessment,
        *,
        private: bool,
    ) -> None:
        notice = room.append(Message(speaker_role=SPEAKER_SYSTEM, content=emergency_notice_text(assessment)))
        _log.warning(
            "Emergency %s in room %s from %s (%s)",
            assessment.level,
            room.room_id,
            binding.nickname,
            ", ".join(assessment.matched_keywords),
        )
        await self.directory.deliver_message(room.room_id, notice)
        alert = {
            **assessment.as_payload(),
            "seq": notice.seq,
            "nickname": binding.nickname,
            "role": binding.role,
            "timestamp": notice.timestamp,
        }
        if not private:
            await self.directory.emit_to_room(room.room_id, "emergency-alert", alert)
            return
        # The triggering text was private to the sender; others only learn that an alert was raised.
        shared = {key: value for key, value in alert.items() if key not in _PRIVATE_ALERT_FIELDS}
        await self.directory.emit_to_room(room.room_id, "emergency-alert", shared, exclude=connection.connection_id)
        await self.directory.emit(connection, "emergency-alert", alert)

    async def _answer(
        self,
        connection: Connection,
        binding: ConnectionBinding,
        room: Room,
        question: str,
        emergency: EmergencyAssessment | None,
    ) -> Message | None:
        segments = build_ai_segments(room, role=binding.role, user_message=question, emergency=emergency)
        reply = await self.responder.reply(segments)

        room = self.store.get_room(binding.room_id)
        if room is None:
            _log.info("Room %s deleted before AI reply was delivered", binding.room_id)
            return None
        entry = room.append(
            Message(
                speaker_role=SPEAKER_AI,
                content=reply,
                for_role=binding.role,
                is_private=True,
            )
        )
        await self.directory.deliver_message(
            room.room_id,
            entry,
            event="ai-message",
            data=entry.as_ai_payload(),
            recipients=[connection.connection_id],
        )
        return entry

    async def typing(self, connection: Connection, *, is_typing: bool = True, room_id: str | None = None) -> None:
        binding, room = self._context(connection, room_id)
        await self.directory.emit_to_room(
            room.room_id,
            "user-typing",
            {"nickname": binding.nickname, "role": binding.role, "isTyping": is_typing},
            exclude=connection.connection_id,
        )

    async def request_documentation(self, connection: Connection, *, room_id: str | None = None) -> asyncio.Task[Any]:
        """Start a SOAP note for a doctor; the note or an error arrives as a later event."""
        binding, _room = self._context(connection, room_id)
        if binding.role != ROLE_DOCTOR:
            raise Forbidden("Only doctors can generate documentation")
        return self._spawn(self._document(connection, binding))

    async def _document(self, connection: Connection, binding: ConnectionBinding) -> str | None:
        room = self.store.get_room(binding.room_id)
        if room is None:
            return None
        documentation = await generate_documentation(self.model, list(room.messages), list(room.files))
        if documentation is None:
            error = ModelUnavailable(DOCUMENTATION_FAILED_MESSAGE)
            await self.directory.emit(
                connection,
                "error",
                {"message": error.message, "code": error.code, "event": "request-documentation"},
            )
            return None

        await self.directory.emit(
            connection,
            "documentation-generated",
            {"documentation": documentation, "timestamp": to_iso(utc_now())},
        )
        return documentation
