from __future__ import annotations

from .connections import Connection, ConnectionDirectory
from .errors import Forbidden, NotFound, ValidationError
from .log import logger
from .models import ROLE_DOCTOR, ConnectionBinding, Room
from .store import SessionStore

_log = logger(tag="video")


class VideoSignalingController:
    """Call state per room: Idle -> Active -> Idle.

    Only peer identifiers and nickname/role metadata pass through here; media
    flows peer to peer.
    """

    def __init__(self, store: SessionStore, directory: ConnectionDirectory) -> None:
        self.store = store
        self.directory = directory

    def _context(self, connection: Connection, room_id: str | None) -> tuple[ConnectionBinding, Room]:
        binding = self.directory.binding(connection.connection_id)
        if binding is None:
            raise ValidationError("Join a room before using video calls")
        target_room = (room_id or binding.room_id).strip()
        if target_room != binding.room_id:
            raise Forbidden("Connection is not part of this room")
        room = self.store.get_room(target_room)
        if room is None:
            raise NotFound("Room not found")
        return binding, room

    def _ensure_doctor(self, binding: ConnectionBinding, room: Room, action: str) -> None:
        if binding.role != ROLE_DOCTOR:
            raise Forbidden(f"Only doctors can {action} video calls")
        invitation = self.store.invitation_for_room(room.room_id)
        if invitation is not None and binding.email != invitation.doctor_email:
            raise Forbidden(f"Only the room's doctor can {action} video calls")

    async def start(self, connection: Connection, room_id: str | None = None) -> Room:
        binding, room = self._context(connection, room_id)
        self._ensure_doctor(binding, room, "start")
        room.video_call_active = True
        room.video_participants = []
        for _connection, member in self.directory.members(room.room_id):
            member.video_peer_ids.clear()
        await self.directory.emit_to_room(
            room.room_id,
            "video-call-started",
            {"startedBy": binding.nickname, "roomId": room.room_id},
        )
        _log.info("Video call started in room %s by %s", room.room_id, binding.nickname)
        return room

    async def join(self, connection: Connection, peer_id: str | None, room_id: str | None = None) -> list[str]:
        binding, room = self._context(connection, room_id)
        peer_id = (peer_id or "").strip()
        if not peer_id:
            raise ValidationError("peerId is required")
        if not room.video_call_active:
            raise ValidationError("No active video call in this room")

        existing = [participant for participant in room.video_participants if participant != peer_id]
        if peer_id not in room.video_participants:
            room.video_participants.append(peer_id)
        if peer_id not in binding.video_peer_ids:
            binding.video_peer_ids.append(peer_id)

        await self.directory.emit_to_room(
            room.room_id,
            "user-joined-video",
            {"peerId": peer_id, "nickname": binding.nickname, "role": binding.role},
            exclude=connection.connection_id,
        )
        await self.directory.emit(connection, "existing-video-participants", {"participants": existing})
        _log.info("%s joined video call with peerId %s", binding.nickname, peer_id)
        return existing

    async def leave(self, connection: Connection, peer_id: str | None, room_id: str | None = None) -> None:
        binding, room = self._context(connection, room_id)
        peer_id = (peer_id or "").strip()
        if not peer_id:
            raise ValidationError("peerId is required")
        if peer_id in room.video_participants:
            room.video_participants.remove(peer_id)
        if peer_id in binding.video_peer_ids:
            binding.video_peer_ids.remove(peer_id)
        await self.directory.emit_to_room(
            room.room_id,
            "user-left-video",
            {"peerId": peer_id, "nickname": binding.nickname},
            exclude=connection.connection_id,
        )

    async def end(self, connection: Connection, room_id: str | None = None) -> Room:
        binding, room = self._context(connection, room_id)
        self._ensure_doctor(binding, room, "end")
        room.video_call_active = False
        room.video_participants = []
        for _connection, member in self.directory.members(room.room_id):
            member.video_peer_ids.clear()
        await self.directory.emit_to_room(room.room_id, "video-call-ended", {"endedBy": binding.nickname})
        _log.info("Video call ended in room %s", room.room_id)
        return room
