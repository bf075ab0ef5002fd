from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .time_utils import to_iso, utc_now

ROLE_PATIENT = "patient"
ROLE_DOCTOR = "doctor"
ROLES = {ROLE_PATIENT, ROLE_DOCTOR}

SPEAKER_PATIENT = "Patient"
SPEAKER_DOCTOR = "Doctor"
SPEAKER_AI = "AI Assistant"
SPEAKER_SYSTEM = "System"

RISK_LEVELS = ("low", "medium", "high", "critical")


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def speaker_for_role(role: str) -> str:
    return SPEAKER_DOCTOR if role == ROLE_DOCTOR else SPEAKER_PATIENT


def _now_iso() -> str:
    return to_iso(utc_now())


class VitalReading(BaseModel):
    # Blood pressure carries systolic/diastolic instead of a single value.
    model_config = ConfigDict(extra="allow")

    value: float | str | None = None
    unit: str = ""
    status: str = "normal"

    @field_validator("unit", "status", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()


class Diagnosis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    primary: str = "Monitoring"
    confidence: float = 0.0
    risk_level: Literal["low", "medium", "high", "critical"] = Field(default="low", alias="riskLevel")
    summary: str = "No specific diagnosis identified"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(100.0, number))

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> str:
        lowered = str(value or "").strip().lower()
        return lowered if lowered in RISK_LEVELS else "low"

    @field_validator("primary", "summary", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()


class KeyFinding(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    parameter: str = ""
    value: str = ""
    normal_range: str = Field(default="", alias="normalRange")
    status: str = "normal"
    concern: str = ""

    @field_validator("parameter", "value", "normal_range", "status", "concern", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()


class HealthMetrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    vitals: dict[str, VitalReading] = Field(default_factory=dict)
    diagnosis: Diagnosis = Field(default_factory=Diagnosis)
    key_findings: list[KeyFinding] = Field(default_factory=list, alias="keyFindings")
    recommendations: list[str] = Field(default_factory=list)

    @field_validator("vitals", mode="before")
    @classmethod
    def _drop_malformed_vitals(cls, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        return {str(name): reading for name, reading in value.items() if isinstance(reading, (dict, VitalReading))}

    @field_validator("key_findings", mode="before")
    @classmethod
    def _drop_malformed_findings(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, (dict, KeyFinding))]

    @field_validator("recommendations", mode="before")
    @classmethod
    def _clean_recommendations(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]

    @field_validator("diagnosis", mode="before")
    @classmethod
    def _default_diagnosis(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, Diagnosis)) else {}

    def as_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class Invitation:
    token: str
    room_id: str
    doctor_email: str
    patient_email: str
    created_at: str = field(default_factory=_now_iso)

    def role_for(self, email: str | None) -> str | None:
        normalized = normalize_email(email)
        if not normalized:
            return None
        if normalized == self.doctor_email:
            return ROLE_DOCTOR
        if normalized == self.patient_email:
            return ROLE_PATIENT
        return None

    def email_for(self, role: str) -> str:
        return self.doctor_email if role == ROLE_DOCTOR else self.patient_email


@dataclass
class Message:
    speaker_role: str
    content: str
    nickname: str | None = None
    timestamp: str = field(default_factory=_now_iso)
    avatar_url: str | None = None
    file_reference: dict[str, Any] | None = None
    for_role: str | None = None
    is_private: bool = False
    seq: int = 0

    def visible_to(self, role: str) -> bool:
        return self.for_role is None or self.for_role == role

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "seq": self.seq,
            "role": self.speaker_role,
            "nickname": self.nickname,
            "content": self.content,
            "timestamp": self.timestamp,
            "isPrivate": self.is_private,
        }
        if self.avatar_url:
            payload["avatarUrl"] = self.avatar_url
        if self.file_reference:
            payload["fileData"] = dict(self.file_reference)
            payload["isFile"] = True
        if self.for_role:
            payload["forRole"] = self.for_role
        return payload

    def as_ai_payload(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "message": self.content,
            "timestamp": self.timestamp,
            "forRole": self.for_role,
            "isPrivate": self.is_private,
        }


@dataclass
class UploadedFile:
    file_id: str
    name: str
    storage_path: str
    url: str
    mime_type: str
    content: str
    uploaded_by: str
    uploader_role: str
    analysis: str = ""
    document_summary: dict[str, Any] | None = None
    uploaded_at: str = field(default_factory=_now_iso)

    def reference(self) -> dict[str, Any]:
        return {"name": self.name, "url": self.url, "type": self.mime_type}

    def as_payload(self, role: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.file_id,
            "name": self.name,
            "url": self.url,
            "type": self.mime_type,
            "uploadedAt": self.uploaded_at,
            "uploadedBy": self.uploaded_by,
        }
        if role == ROLE_DOCTOR:
            payload["content"] = self.content
            payload["analysis"] = self.analysis
            payload["documentSummary"] = self.document_summary
        return payload


@dataclass
class ConnectionBinding:
    connection_id: str
    room_id: str
    nickname: str
    role: str
    avatar_url: str | None = None
    email: str | None = None
    video_peer_ids: list[str] = field(default_factory=list)


@dataclass
class Room:
    room_id: str
    messages: list[Message] = field(default_factory=list)
    files: list[UploadedFile] = field(default_factory=list)
    patient_nickname: str | None = None
    doctor_nickname: str | None = None
    patient_avatar_url: str | None = None
    doctor_avatar_url: str | None = None
    health_metrics: HealthMetrics | None = None
    video_call_active: bool = False
    video_participants: list[str] = field(default_factory=list)
    _next_seq: int = 1

    def append(self, message: Message) -> Message:
        message.seq = self._next_seq
        self._next_seq += 1
        self.messages.append(message)
        return message

    def messages_for(self, role: str) -> list[Message]:
        return [message for message in self.messages if message.visible_to(role)]

    def files_for(self, role: str) -> list[dict[str, Any]]:
        return [item.as_payload(role) for item in self.files]

    def set_slot(self, role: str, nickname: str, avatar_url: str | None) -> None:
        if role == ROLE_DOCTOR:
            self.doctor_nickname = nickname
            self.doctor_avatar_url = avatar_url
        else:
            self.patient_nickname = nickname
            self.patient_avatar_url = avatar_url

    def slot_owner(self, role: str) -> str | None:
        return self.doctor_nickname if role == ROLE_DOCTOR else self.patient_nickname

    def clear_slot(self, role: str) -> None:
        if role == ROLE_DOCTOR:
            self.doctor_nickname = None
            self.doctor_avatar_url = None
        else:
            self.patient_nickname = None
            self.patient_avatar_url = None

    def presence(self) -> dict[str, Any]:
        return {
            "patient": self.patient_nickname,
            "doctor": self.doctor_nickname,
            "patientAvatar": self.patient_avatar_url,
            "doctorAvatar": self.doctor_avatar_url,
        }
