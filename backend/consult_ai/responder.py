from __future__ import annotations

from consult_core.errors import ModelUnavailable
from consult_core.log import logger
from consult_core.models import ROLE_DOCTOR, Room
from consult_core.time_utils import parse_iso

from .emergency import EmergencyAssessment
from .llm import LanguageModel, PromptSegment, system, user
from .prompts import DOCTOR_PERSONA, PATIENT_PERSONA

_log = logger(tag="responder")

AI_FALLBACK_REPLY = "I'm having trouble responding. Please try again."
HISTORY_WINDOW = 5
_DOCTOR_ANALYSIS_CHARS = 800


def _upload_date(value: str) -> str:
    parsed = parse_iso(value)
    return parsed.date().isoformat() if parsed else value


def persona_for(role: str) -> str:
    return DOCTOR_PERSONA if role == ROLE_DOCTOR else PATIENT_PERSONA


def document_context(room: Room, role: str) -> str:
    if not room.files:
        return ""
    if role != ROLE_DOCTOR:
        lines = ["UPLOADED DOCUMENTS (patient view):"]
        for idx, item in enumerate(room.files, start=1):
            lines.append(f"{idx}. {item.name} - uploaded successfully, being reviewed by your doctor")
        return "\n".join(lines)

    lines = ["UPLOADED MEDICAL DOCUMENTS (full clinical detail):"]
    for idx, item in enumerate(room.files, start=1):
        lines.append(f"{idx}. {item.name} (uploaded {_upload_date(item.uploaded_at)})")
        summary = item.document_summary or {}
        key_metrics = summary.get("keyMetrics") or {}
        if summary:
            lines.append(f"   - Diagnosis: {key_metrics.get('diagnosis', 'Unknown')}")
            lines.append(f"   - Risk Level: {key_metrics.get('riskLevel', 'low')}")
            lines.append(f"   - Critical Findings: {', '.join(key_metrics.get('criticalFindings') or []) or 'none'}")
            lines.append(f"   - Analysis: {summary.get('briefSummary', '')}")
        if item.analysis:
            lines.append(f"   - Full Analysis:\n{item.analysis[:_DOCTOR_ANALYSIS_CHARS]}")
    return "\n".join(lines)


def build_ai_segments(
    room: Room,
    *,
    role: str,
    user_message: str,
    emergency: EmergencyAssessment | None = None,
) -> list[PromptSegment]:
    """Snapshot everything the model may see for `role` before any await."""
    recent = room.messages_for(role)[-HISTORY_WINDOW:]
    context_lines = [
        f"Room: {room.room_id}",
        f"User Role: {role}",
        f"Patient: {room.patient_nickname or 'Waiting'}",
        f"Doctor: {room.doctor_nickname or 'Not yet joined'}",
    ]
    if emergency is not None and emergency.is_emergency:
        context_lines.append(f"EMERGENCY CONTEXT: {emergency.reasoning or 'Emergency indicators detected'}")
        context_lines.append(f"Level: {emergency.level}")
    documents = document_context(room, role)
    if documents:
        context_lines.append("")
        context_lines.append(documents)
    context_lines.append("")
    context_lines.append(f"Recent messages (last {HISTORY_WINDOW}):")
    context_lines.extend(f"{message.speaker_role}: {message.content}" for message in recent)

    return [
        system(persona_for(role)),
        system("\n".join(context_lines)),
        user(f"[{role}]: {user_message}"),
    ]


class AIResponder:
    def __init__(self, model: LanguageModel) -> None:
        self.model = model

    async def reply(self, segments: list[PromptSegment]) -> str:
        try:
            text = await self.model.complete(segments)
        except ModelUnavailable as exc:
            _log.warning("AI reply unavailable: %s", exc)
            return AI_FALLBACK_REPLY
        return text.strip() or AI_FALLBACK_REPLY
