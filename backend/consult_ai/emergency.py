from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from consult_core.errors import ModelUnavailable
from consult_core.log import logger

from .llm import LanguageModel, extract_json_object, system, user
from .prompts import EMERGENCY_SYSTEM, emergency_prompt

_log = logger(tag="emergency")

EMERGENCY_KEYWORDS = (
    "chest pain",
    "heart attack",
    "can't breathe",
    "breathless",
    "severe bleeding",
    "unconscious",
    "stroke",
    "paralysis",
    "severe headache",
    "suicide",
    "overdose",
    "seizure",
    "choking",
    "anaphylaxis",
    "severe pain",
)
EMERGENCY_LEVELS = ("CRITICAL", "HIGH", "MODERATE", "LOW")
_ALARM_LEVELS = {"CRITICAL", "HIGH"}

DEFAULT_URGENT_ADVICE = "Seek immediate medical attention or call your local emergency number."


@dataclass(frozen=True)
class EmergencyAssessment:
    is_emergency: bool
    level: str | None = None
    reasoning: str | None = None
    urgent_advice: str | None = None
    matched_keywords: tuple[str, ...] = ()

    def as_payload(self) -> dict[str, Any]:
        return {
            "isEmergency": self.is_emergency,
            "level": self.level,
            "reasoning": self.reasoning,
            "urgentAdvice": self.urgent_advice,
            "matchedKeywords": list(self.matched_keywords),
        }


NO_EMERGENCY = EmergencyAssessment(is_emergency=False)


def match_emergency_keywords(message: str) -> tuple[str, ...]:
    lowered = (message or "").lower().replace("’", "'")
    return tuple(keyword for keyword in EMERGENCY_KEYWORDS if keyword in lowered)


def _fail_safe(matched: tuple[str, ...]) -> EmergencyAssessment:
    return EmergencyAssessment(
        is_emergency=True,
        level="HIGH",
        reasoning="Keyword detected",
        urgent_advice=DEFAULT_URGENT_ADVICE,
        matched_keywords=matched,
    )


async def detect_emergency(model: LanguageModel, message: str) -> EmergencyAssessment:
    matched = match_emergency_keywords(message)
    if not matched:
        return NO_EMERGENCY

    try:
        raw = await model.complete([system(EMERGENCY_SYSTEM), user(emergency_prompt(message))])
    except ModelUnavailable as exc:
        _log.warning("Emergency classification unavailable, failing safe: %s", exc)
        return _fail_safe(matched)

    parsed = extract_json_object(raw)
    level = str((parsed or {}).get("level") or "").strip().upper()
    if level not in EMERGENCY_LEVELS:
        _log.warning("Emergency classification unparseable, failing safe: %r", raw[:200])
        return _fail_safe(matched)

    reasoning = str(parsed.get("reasoning") or "").strip() or None
    urgent_advice = str(parsed.get("urgentAdvice") or "").strip() or None
    is_emergency = level in _ALARM_LEVELS
    if is_emergency and not urgent_advice:
        urgent_advice = DEFAULT_URGENT_ADVICE
    return EmergencyAssessment(
        is_emergency=is_emergency,
        level=level,
        reasoning=reasoning,
        urgent_advice=urgent_advice,
        matched_keywords=matched,
    )
