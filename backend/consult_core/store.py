from __future__ import annotations

import secrets
from typing import Any

from .errors import Forbidden, NotFound, ValidationError
from .log import logger
from .models import ROLE_DOCTOR, Invitation, Room, normalize_email
from .time_utils import utc_now

_log = logger(tag="store")


def generate_room_token() -> str:
    return secrets.token_hex(16)


def _new_room_id() -> str:
    return f"room_{int(utc_now().timestamp() * 1000)}_{secrets.token_hex(4)}"


def invite_link(token: str) -> str:
    return f"/chat/{token}"


class SessionStore:
    """Process-wide room and invitation state.

    Every mutation runs without awaiting, so callers on the event loop see
    each operation as atomic. Callers that suspend between reads must re-fetch
    the room by id with `get_room` and treat `None` as a cancelled operation.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._invitations: dict[str, Invitation] = {}

    def create_invitation(self, doctor_email: str | None, patient_email: str | None) -> Invitation:
        doctor = normalize_email(doctor_email)
        patient = normalize_email(patient_email)
        if not doctor or not patient:
            raise ValidationError("Doctor email and Patient email are required")
        token = generate_room_token()
        while token in self._invitations:
            token = generate_room_token()
        invitation = Invitation(
            token=token,
            room_id=_new_room_id(),
            doctor_email=doctor,
            patient_email=patient,
        )
        self._invitations[token] = invitation
        self.ensure_room(invitation.room_id)
        _log.info("Room created: %s (patient invited: %s)", invitation.room_id, patient)
        return invitation

    def get_invitation(self, token: str | None) -> Invitation:
        invitation = self._invitations.get(token or "")
        if invitation is None:
            raise NotFound("Invalid room link")
        return invitation

    def validate_access(self, token: str | None, requester_email: str | None) -> tuple[str, str]:
        invitation = self.get_invitation(token)
        role = invitation.role_for(requester_email)
        if role is None:
            raise Forbidden("You are not authorized to join this room")
        return role, invitation.room_id

    def delete_invitation(self, token: str | None, requester_email: str | None) -> str:
        invitation = self.get_invitation(token)
        if invitation.role_for(requester_email) != ROLE_DOCTOR:
            raise Forbidden("Only the doctor who created this room can delete it")
        return invitation.room_id

    def remove_room(self, token: str, room_id: str) -> None:
        self._rooms.pop(room_id, None)
        self._invitations.pop(token, None)
        _log.info("Room deleted: %s", room_id)

    def invitation_for_room(self, room_id: str) -> Invitation | None:
        for invitation in self._invitations.values():
            if invitation.room_id == room_id:
                return invitation
        return None

    def ensure_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self._rooms[room_id] = room
        return room

    def get_room(self, room_id: str | None) -> Room | None:
        return self._rooms.get(room_id or "")

    def rooms_for_doctor(self, email: str | None) -> list[dict[str, Any]]:
        normalized = normalize_email(email)
        listing: list[dict[str, Any]] = []
        for invitation in self._invitations.values():
            if invitation.doctor_email != normalized:
                continue
            room = self._rooms.get(invitation.room_id)
            listing.append(
                {
                    "hash": invitation.token,
                    "roomId": invitation.room_id,
                    "patientEmail": invitation.patient_email,
                    "createdAt": invitation.created_at,
                    "hasPatientJoined": bool(room and room.patient_nickname),
                    "inviteLink": invite_link(invitation.token),
                }
            )
        return listing

    def rooms_for_patient(self, email: str | None) -> list[dict[str, Any]]:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Email is required")
        listing: list[dict[str, Any]] = []
        for invitation in self._invitations.values():
            if invitation.patient_email != normalized:
                continue
            room = self._rooms.get(invitation.room_id)
            listing.append(
                {
                    "hash": invitation.token,
                    "roomId": invitation.room_id,
                    "doctorEmail": invitation.doctor_email,
                    "createdAt": invitation.created_at,
                    "isDoctorOnline": bool(room and room.doctor_nickname),
                    "inviteLink": invite_link(invitation.token),
                }
            )
        return listing
