from __future__ import annotations

from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError

from consult_core.errors import ModelUnavailable
from consult_core.log import logger
from consult_core.models import Diagnosis, HealthMetrics, Message

from .llm import LanguageModel, extract_json_object, system, user
from .prompts import METRICS_SYSTEM, metrics_prompt

_log = logger(tag="metrics")


class MetricsParseError(ValueError):
    pass


@dataclass
class MetricsExtraction:
    metrics: HealthMetrics
    succeeded: bool
    error: str | None = None


def extraction_error_metrics() -> HealthMetrics:
    return HealthMetrics(
        vitals={},
        diagnosis=Diagnosis(
            primary="Analysis Error",
            confidence=0,
            risk_level="low",
            summary="Unable to extract metrics from document",
        ),
        key_findings=[],
        recommendations=["Please re-upload the document or check file format"],
    )


def parse_health_metrics(raw_text: str) -> HealthMetrics:
    payload = extract_json_object(raw_text)
    if payload is None:
        raise MetricsParseError("Model response did not contain a JSON object.")
    try:
        return HealthMetrics.model_validate(payload)
    except PydanticValidationError as exc:
        raise MetricsParseError(str(exc)) from exc


def _recent_conversation(messages: list[Message], limit: int = 10) -> str:
    return "\n".join(f"{message.speaker_role}: {message.content}" for message in messages[-limit:])


async def extract_health_metrics(
    model: LanguageModel,
    content: str,
    conversation: list[Message],
) -> MetricsExtraction:
    try:
        raw = await model.complete(
            [
                system(METRICS_SYSTEM),
                user(metrics_prompt(content, _recent_conversation(conversation))),
            ]
        )
        metrics = parse_health_metrics(raw)
    except (ModelUnavailable, MetricsParseError) as exc:
        _log.warning("Metrics extraction failed: %s", exc)
        return MetricsExtraction(metrics=extraction_error_metrics(), succeeded=False, error=str(exc))
    return MetricsExtraction(metrics=metrics, succeeded=True)
