from __future__ import annotations

from consult_core.errors import ModelUnavailable
from consult_core.log import logger
from consult_core.models import SPEAKER_DOCTOR, SPEAKER_PATIENT, Message, UploadedFile

from .llm import LanguageModel, system, user
from .prompts import DOCUMENTATION_SYSTEM, documentation_prompt

_log = logger(tag="documentation")

_CONVERSATION_SPEAKERS = {SPEAKER_PATIENT, SPEAKER_DOCTOR}


def conversation_transcript(messages: list[Message]) -> str:
    return "\n".join(
        f"{message.speaker_role}: {message.content}"
        for message in messages
        if message.speaker_role in _CONVERSATION_SPEAKERS and not message.file_reference
    )


def files_overview(files: list[UploadedFile]) -> str:
    return "\n".join(f"{item.name}: {item.analysis or 'No analysis'}" for item in files)


async def generate_documentation(
    model: LanguageModel,
    messages: list[Message],
    files: list[UploadedFile],
) -> str | None:
    """Draft a SOAP note for the consultation; None when the model is unavailable."""
    prompt = documentation_prompt(conversation_transcript(messages), files_overview(files))
    try:
        text = await model.complete([system(DOCUMENTATION_SYSTEM), user(prompt)])
    except ModelUnavailable as exc:
        _log.warning("Documentation generation failed: %s", exc)
        return None
    return text.strip() or None
