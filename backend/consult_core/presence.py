from __future__ import annotations

from .connections import Connection, ConnectionDirectory
from .errors import Forbidden, ValidationError
from .log import logger
from .models import ROLES, ConnectionBinding, Room, normalize_email
from .store import SessionStore

_log = logger(tag="presence")

ROOM_DELETED_MESSAGE = "This consultation room has been deleted by the doctor"


class PresenceController:
    def __init__(self, store: SessionStore, directory: ConnectionDirectory) -> None:
        self.store = store
        self.directory = directory

    async def join(
        self,
        connection: Connection,
        *,
        room_id: str | None,
        nickname: str | None,
        role: str | None,
        avatar_url: str | None = None,
        email: str | None = None,
    ) -> Room:
        room_id = (room_id or "").strip()
        nickname = (nickname or "").strip()
        role = (role or "").strip().lower()
        if not room_id or not nickname:
            raise ValidationError("roomId and nickname are required")
        if role not in ROLES:
            raise ValidationError("role must be 'patient' or 'doctor'")

        invitation = self.store.invitation_for_room(room_id)
        if invitation is not None and invitation.email_for(role) != normalize_email(email):
            raise Forbidden("You are not authorized to join this room")

        previous = self.directory.binding(connection.connection_id)
        if previous is not None and (previous.room_id != room_id or previous.role != role):
            await self.leave(connection.connection_id)

        room = self.store.ensure_room(room_id)
        binding = ConnectionBinding(
            connection_id=connection.connection_id,
            room_id=room_id,
            nickname=nickname,
            role=role,
            avatar_url=avatar_url,
            email=normalize_email(email) or None,
        )
        self.directory.bind(connection, binding)
        # Last writer wins: the slot shows whoever joined most recently for the role.
        room.set_slot(role, nickname, avatar_url)

        await self.directory.emit(
            connection,
            "room-history",
            {
                "messages": [message.as_payload() for message in room.messages_for(role)],
                "files": room.files_for(role),
            },
        )
        if room.health_metrics is not None:
            await self.directory.emit(connection, "health-metrics-updated", {"metrics": room.health_metrics.as_payload()})
        if room.video_call_active:
            await self.directory.emit(connection, "video-call-active", {"active": True})

        await self.directory.emit_to_room(room_id, "user-joined", {"nickname": nickname, "role": role, **room.presence()})
        _log.info("%s (%s) joined room %s", nickname, role, room_id)
        return room

    async def leave(self, connection_id: str) -> ConnectionBinding | None:
        binding = self.directory.unbind(connection_id)
        if binding is None:
            return None
        room = self.store.get_room(binding.room_id)
        if room is None:
            return binding

        for peer_id in binding.video_peer_ids:
            if peer_id in room.video_participants:
                room.video_participants.remove(peer_id)
                await self.directory.emit_to_room(
                    room.room_id,
                    "user-left-video",
                    {"peerId": peer_id, "nickname": binding.nickname},
                )

        still_present = any(
            other.nickname == binding.nickname
            for _connection, other in self.directory.members_with_role(room.room_id, binding.role)
        )
        if room.slot_owner(binding.role) == binding.nickname and not still_present:
            room.clear_slot(binding.role)

        await self.directory.emit_to_room(
            room.room_id,
            "user-left",
            {
                "nickname": binding.nickname,
                "role": binding.role,
                "patient": room.patient_nickname,
                "doctor": room.doctor_nickname,
            },
        )
        _log.info("%s disconnected from room %s", binding.nickname, room.room_id)
        return binding

    async def evict_room(self, room_id: str, message: str = ROOM_DELETED_MESSAGE) -> int:
        evicted = 0
        for connection, _binding in self.directory.members(room_id):
            await self.directory.emit(connection, "room-deleted", {"message": message})
            self.directory.unbind(connection.connection_id)
            evicted += 1
        return evicted

    async def delete_room(self, token: str | None, requester_email: str | None) -> str:
        room_id = self.store.delete_invitation(token, requester_email)
        await self.evict_room(room_id)
        self.store.remove_room(token or "", room_id)
        return room_id
