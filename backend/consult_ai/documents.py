from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from consult_core.connections import ConnectionDirectory
from consult_core.errors import ModelUnavailable
from consult_core.log import logger
from consult_core.models import (
    ROLE_DOCTOR,
    ROLE_PATIENT,
    SPEAKER_AI,
    HealthMetrics,
    Message,
    Room,
    UploadedFile,
    speaker_for_role,
)
from consult_core.store import SessionStore
from consult_core.time_utils import parse_iso, to_iso, utc_now

from .extraction import is_sentinel
from .llm import LanguageModel, system, user
from .metrics import MetricsExtraction, extract_health_metrics
from .prompts import (
    EXPLAINABLE_ANALYSIS_SYSTEM,
    TEMPORAL_ANALYSIS_SYSTEM,
    explainable_analysis_prompt,
    temporal_analysis_prompt,
)

_log = logger(tag="documents")

MIN_ANALYZABLE_CHARS = 20
CONTENT_PREFIX_CHARS = 5000
ANALYSIS_FALLBACK = "Unable to analyze with full explainability."
_PRIOR_FINDINGS_CHARS = 200
_PRIOR_CONTENT_CHARS = 500
_BRIEF_SUMMARY_CHARS = 500
_RAW_CONTENT_CHARS = 1000
_CRITICAL_FINDINGS = 3


@dataclass
class DocumentIngest:
    file_id: str
    room_id: str
    name: str
    storage_path: str
    url: str
    mime_type: str
    content: str
    uploaded_by: str
    uploader_role: str


def is_analyzable(content: str) -> bool:
    cleaned = (content or "").strip()
    return len(cleaned) > MIN_ANALYZABLE_CHARS and not is_sentinel(cleaned)


def previous_reports(files: list[UploadedFile]) -> list[dict[str, str]]:
    reports: list[dict[str, str]] = []
    for item in files:
        uploaded = parse_iso(item.uploaded_at)
        reports.append(
            {
                "name": item.name,
                "date": uploaded.date().isoformat() if uploaded else item.uploaded_at,
                "keyFindings": item.analysis[:_PRIOR_FINDINGS_CHARS] if item.analysis else "No analysis",
                "content": item.content[:_PRIOR_CONTENT_CHARS],
            }
        )
    return reports


async def explainable_analysis(
    model: LanguageModel,
    content: str,
    file_name: str,
    reports: list[dict[str, str]],
) -> str:
    try:
        return await model.complete(
            [
                system(EXPLAINABLE_ANALYSIS_SYSTEM),
                user(explainable_analysis_prompt(content, file_name, reports)),
            ]
        )
    except ModelUnavailable as exc:
        _log.warning("Explainable analysis failed for %s: %s", file_name, exc)
        return ANALYSIS_FALLBACK


async def temporal_analysis(
    model: LanguageModel,
    content: str,
    file_name: str,
    prior_files: list[UploadedFile],
) -> str:
    reports = previous_reports(prior_files)
    if not reports:
        return await explainable_analysis(model, content, file_name, [])
    try:
        return await model.complete(
            [
                system(TEMPORAL_ANALYSIS_SYSTEM),
                user(temporal_analysis_prompt(content, file_name, reports)),
            ]
        )
    except ModelUnavailable as exc:
        _log.warning("Temporal analysis failed for %s: %s", file_name, exc)
        return ANALYSIS_FALLBACK


def build_document_summary(content: str, file_name: str, analysis: str, metrics: HealthMetrics) -> dict[str, Any]:
    return {
        "fileName": file_name,
        "timestamp": to_iso(utc_now()),
        "briefSummary": analysis[:_BRIEF_SUMMARY_CHARS] if analysis else "No analysis available",
        "keyMetrics": {
            "diagnosis": metrics.diagnosis.primary or "Unknown",
            "riskLevel": metrics.diagnosis.risk_level,
            "criticalFindings": [
                f"{finding.parameter}: {finding.value}" for finding in metrics.key_findings[:_CRITICAL_FINDINGS]
            ],
        },
        "rawContent": content[:_RAW_CONTENT_CHARS],
    }


def doctor_analysis_text(analysis: str) -> str:
    return f"🔬 **Clinical Analysis** (with XAI)\n\n{analysis}"


def patient_receipt_text(file_name: str) -> str:
    return f'✅ I\'ve received "{file_name}". Your doctor will review it shortly.'


class DocumentPipeline:
    def __init__(self, store: SessionStore, directory: ConnectionDirectory, model: LanguageModel) -> None:
        self.store = store
        self.directory = directory
        self.model = model

    async def process(self, ingest: DocumentIngest) -> UploadedFile | None:
        room = self.store.get_room(ingest.room_id)
        if room is None:
            _log.info("Upload %s skipped: room %s no longer exists", ingest.name, ingest.room_id)
            return None

        # Snapshot before the first model call; the room may change while we wait.
        prior_files = list(room.files)
        conversation = list(room.messages)

        analysis = ""
        extraction: MetricsExtraction | None = None
        summary: dict[str, Any] | None = None
        if is_analyzable(ingest.content):
            _log.info("Starting analysis for %s in room %s", ingest.name, ingest.room_id)
            analysis = await temporal_analysis(self.model, ingest.content, ingest.name, prior_files)
            extraction = await extract_health_metrics(self.model, ingest.content, conversation)
            summary = build_document_summary(ingest.content, ingest.name, analysis, extraction.metrics)
        else:
            _log.info("Content too short or unreadable for analysis: %s", ingest.name)

        room = self.store.get_room(ingest.room_id)
        if room is None:
            _log.info("Upload %s cancelled: room %s was deleted during analysis", ingest.name, ingest.room_id)
            return None
        return await self._publish(room, ingest, analysis, extraction, summary)

    async def _publish(
        self,
        room: Room,
        ingest: DocumentIngest,
        analysis: str,
        extraction: MetricsExtraction | None,
        summary: dict[str, Any] | None,
    ) -> UploadedFile:
        uploaded = UploadedFile(
            file_id=ingest.file_id,
            name=ingest.name,
            storage_path=ingest.storage_path,
            url=ingest.url,
            mime_type=ingest.mime_type,
            content=ingest.content[:CONTENT_PREFIX_CHARS],
            uploaded_by=ingest.uploaded_by,
            uploader_role=ingest.uploader_role,
            analysis=analysis,
            document_summary=summary,
        )

        # All log appends happen before any send, so sequence numbers fix the order.
        room.files.append(uploaded)
        metrics_updated = extraction is not None and extraction.succeeded
        if metrics_updated:
            room.health_metrics = extraction.metrics
        notice = room.append(
            Message(
                speaker_role=speaker_for_role(ingest.uploader_role),
                nickname=ingest.uploaded_by,
                content=f"📎 Uploaded: {ingest.name}",
                file_reference=uploaded.reference(),
            )
        )
        doctor_message: Message | None = None
        if analysis:
            doctor_message = room.append(
                Message(
                    speaker_role=SPEAKER_AI,
                    content=doctor_analysis_text(analysis),
                    for_role=ROLE_DOCTOR,
                    is_private=True,
                )
            )
        patient_message: Message | None = None
        if ingest.uploader_role == ROLE_PATIENT:
            patient_message = room.append(
                Message(
                    speaker_role=SPEAKER_AI,
                    content=patient_receipt_text(ingest.name),
                    for_role=ROLE_PATIENT,
                    is_private=True,
                )
            )

        if metrics_updated:
            await self.directory.emit_to_room(
                room.room_id,
                "health-metrics-updated",
                {"metrics": room.health_metrics.as_payload()},
            )
        await self.directory.deliver_message(room.room_id, notice)
        for connection, binding in self.directory.members(room.room_id):
            await self.directory.emit(connection, "files-updated", {"files": room.files_for(binding.role)})
        if doctor_message is not None:
            await self.directory.deliver_message(
                room.room_id,
                doctor_message,
                event="ai-message",
                data=doctor_message.as_ai_payload(),
            )
        if patient_message is not None:
            uploader_ids = [
                connection.connection_id
                for connection, binding in self.directory.members_with_role(room.room_id, ROLE_PATIENT)
                if binding.nickname == ingest.uploaded_by
            ]
            await self.directory.deliver_message(
                room.room_id,
                patient_message,
                event="ai-message",
                data=patient_message.as_ai_payload(),
                recipients=uploader_ids,
            )
        _log.info("Upload %s published to room %s", ingest.name, room.room_id)
        return uploaded
