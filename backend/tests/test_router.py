from __future__ import annotations

import asyncio
import random

import pytest

from consult_ai.responder import AI_FALLBACK_REPLY
from consult_core.connections import ConnectionDirectory
from consult_core.errors import Forbidden, ValidationError
from consult_core.models import ROLE_DOCTOR, ROLE_PATIENT, SPEAKER_AI, Message, UploadedFile
from consult_core.presence import PresenceController
from consult_core.router import MessageRouter, strip_ai_mention
from consult_core.store import SessionStore
from fakes import FakeConnection, FakeModel

_MESSAGE_EVENTS = {"chat-message", "ai-message"}


class Consultation:
    def __init__(self, model: FakeModel) -> None:
        self.store = SessionStore()
        self.directory = ConnectionDirectory()
        self.presence = PresenceController(self.store, self.directory)
        self.router = MessageRouter(self.store, self.directory, model)
        self.model = model
        self.joined: list[FakeConnection] = []

    async def join(self, connection_id: str, nickname: str, role: str, room_id: str = "room-1") -> FakeConnection:
        connection = FakeConnection(connection_id)
        await self.presence.join(connection, room_id=room_id, nickname=nickname, role=role)
        self.joined.append(connection)
        for joined in self.joined:
            joined.clear()
        return connection

    async def say(self, connection: FakeConnection, text: str) -> Message:
        entry = await self.router.handle_chat(connection, text)
        await self.router.drain()
        return entry


def test_plain_message_is_broadcast_to_everyone():
    async def scenario():
        consult = Consultation(FakeModel())
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.say(patient, "my knee hurts")
        return consult, patient, doctor

    consult, patient, doctor = asyncio.run(scenario())
    assert patient.payloads("chat-message")[0]["content"] == "my knee hurts"
    assert doctor.payloads("chat-message")[0]["role"] == "Patient"
    assert consult.model.calls == []


def test_ai_mention_is_private_to_requester_and_reply_is_role_tagged():
    async def scenario():
        model = FakeModel(["Rest and ice should help."])
        consult = Consultation(model)
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.say(patient, "@AI is ice ok for my knee?")
        return consult, patient, doctor

    consult, patient, doctor = asyncio.run(scenario())
    assert patient.names() == ["chat-message", "ai-message"]
    assert doctor.events == []

    reply = patient.payloads("ai-message")[0]
    assert reply["message"] == "Rest and ice should help."
    assert reply["forRole"] == ROLE_PATIENT
    assert reply["isPrivate"] is True

    room = consult.store.get_room("room-1")
    question, answer = room.messages
    assert question.for_role == ROLE_PATIENT and question.is_private
    assert answer.speaker_role == SPEAKER_AI and answer.for_role == ROLE_PATIENT
    assert answer.seq == question.seq + 1
    assert "[patient]: is ice ok for my knee?" in consult.model.calls[0][-1].content


def test_model_failure_degrades_to_apology():
    async def scenario():
        consult = Consultation(FakeModel(offline=True))
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.say(doctor, "@ai summarize please")
        return doctor

    doctor = asyncio.run(scenario())
    assert doctor.payloads("ai-message")[0]["message"] == AI_FALLBACK_REPLY
    assert doctor.payloads("error") == []


def test_patient_ai_context_never_contains_doctor_material():
    async def scenario():
        consult = Consultation(FakeModel())
        room = consult.store.ensure_room("room-1")
        room.files.append(
            UploadedFile(
                file_id="f1",
                name="cbc.pdf",
                storage_path="/tmp/cbc.pdf",
                url="/uploads/cbc.pdf",
                mime_type="application/pdf",
                content="Hemoglobin 9.1",
                uploaded_by="Pat",
                uploader_role=ROLE_PATIENT,
                analysis="SECRET-ANALYSIS iron deficiency",
                document_summary={"briefSummary": "SECRET-SUMMARY", "keyMetrics": {"diagnosis": "Anemia"}},
            )
        )
        room.append(Message(speaker_role=SPEAKER_AI, content="SECRET-NOTE", for_role=ROLE_DOCTOR, is_private=True))
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.say(patient, "@ai what did my report say?")
        await consult.say(doctor, "@ai what did the report say?")
        return consult

    consult = asyncio.run(scenario())
    patient_prompt, doctor_prompt = consult.model.calls
    patient_text = "\n".join(segment.content for segment in patient_prompt)
    doctor_text = "\n".join(segment.content for segment in doctor_prompt)
    assert "SECRET" not in patient_text
    assert "being reviewed by your doctor" in patient_text
    assert "SECRET-ANALYSIS" in doctor_text
    assert "SECRET-NOTE" in doctor_text


def test_emergency_fails_safe_when_classifier_is_down():
    async def scenario():
        consult = Consultation(FakeModel(offline=True))
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.say(patient, "I have crushing CHEST PAIN")
        return consult, patient, doctor

    consult, patient, doctor = asyncio.run(scenario())
    for connection in (patient, doctor):
        alert = connection.payloads("emergency-alert")[0]
        assert alert["isEmergency"] is True
        assert alert["level"] == "HIGH"
        assert alert["reasoning"] == "Keyword detected"
        assert "chest pain" in alert["matchedKeywords"]
        system_notes = [m for m in connection.payloads("chat-message") if m["role"] == "System"]
        assert len(system_notes) == 1
    assert [m.speaker_role for m in consult.store.get_room("room-1").messages] == ["Patient", "System"]


def test_private_emergency_keeps_details_with_the_sender():
    async def scenario():
        consult = Consultation(FakeModel(offline=True))
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.say(patient, "@ai is this chest pain serious?")
        return patient, doctor

    patient, doctor = asyncio.run(scenario())
    assert doctor.names() == ["chat-message", "emergency-alert"]
    shared = doctor.payloads("emergency-alert")[0]
    assert shared["isEmergency"] is True and shared["nickname"] == "Pat"
    assert "matchedKeywords" not in shared and "reasoning" not in shared
    assert all("chest pain" not in str(data) for _event, data in doctor.events)

    own = patient.payloads("emergency-alert")[0]
    assert own["matchedKeywords"] == ["chest pain"]
    assert own["seq"] == shared["seq"]


def test_emergency_context_reaches_pending_ai_reply():
    async def scenario():
        model = FakeModel(
            [
                '{"level": "CRITICAL", "reasoning": "Possible MI", "urgentAdvice": "Call emergency services now"}',
                "Please call emergency services.",
            ]
        )
        consult = Consultation(model)
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        await consult.say(patient, "@ai chest pain spreading to my arm")
        return consult, patient

    consult, patient = asyncio.run(scenario())
    assert patient.names() == ["chat-message", "chat-message", "emergency-alert", "ai-message"]
    assert patient.payloads("emergency-alert")[0]["urgentAdvice"] == "Call emergency services now"
    reply_prompt = "\n".join(segment.content for segment in consult.model.calls[1])
    assert "EMERGENCY CONTEXT: Possible MI" in reply_prompt


def test_non_emergency_classification_raises_no_alert():
    async def scenario():
        consult = Consultation(FakeModel(['{"level": "LOW", "reasoning": "Old injury"}']))
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        await consult.say(patient, "the severe pain from last year is gone")
        return patient

    patient = asyncio.run(scenario())
    assert patient.payloads("emergency-alert") == []


def test_typing_goes_to_everyone_else():
    async def scenario():
        consult = Consultation(FakeModel())
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.router.typing(patient)
        return patient, doctor

    patient, doctor = asyncio.run(scenario())
    assert patient.events == []
    assert doctor.payloads("user-typing") == [{"nickname": "Pat", "role": ROLE_PATIENT, "isTyping": True}]


def test_chat_requires_a_bound_connection_and_text():
    async def scenario():
        consult = Consultation(FakeModel())
        stranger = FakeConnection("c-x")
        with pytest.raises(ValidationError):
            await consult.router.handle_chat(stranger, "hi")
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        with pytest.raises(ValidationError):
            await consult.router.handle_chat(patient, "   ")
        with pytest.raises(Forbidden):
            await consult.router.handle_chat(patient, "hi", room_id="room-2")

    asyncio.run(scenario())


def test_documentation_is_doctor_only_and_sent_to_requester():
    async def scenario():
        consult = Consultation(FakeModel(default="S: cough\nO: afebrile\nA: URI\nP: fluids"))
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.say(patient, "I have had a cough for a week")
        with pytest.raises(Forbidden):
            await consult.router.request_documentation(patient)
        await consult.router.request_documentation(doctor)
        await consult.router.drain()
        return consult, patient, doctor

    consult, patient, doctor = asyncio.run(scenario())
    assert doctor.payloads("documentation-generated")[0]["documentation"].startswith("S: cough")
    assert patient.payloads("documentation-generated") == []
    prompt = consult.model.calls[-1][-1].content
    assert "Patient: I have had a cough for a week" in prompt


def test_documentation_does_not_hold_up_the_doctor():
    async def scenario():
        release = asyncio.Event()

        class SlowModel(FakeModel):
            async def complete(self, segments):
                await release.wait()
                return await super().complete(segments)

        consult = Consultation(SlowModel(default="S: headache"))
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.router.request_documentation(doctor)
        await consult.router.typing(doctor)
        assert patient.names() == ["user-typing"]
        assert doctor.events == []
        release.set()
        await consult.router.drain()
        return doctor

    doctor = asyncio.run(scenario())
    assert doctor.names() == ["documentation-generated"]


def test_documentation_failure_is_reported_to_requester():
    async def scenario():
        consult = Consultation(FakeModel(offline=True))
        patient = await consult.join("c-p", "Pat", ROLE_PATIENT)
        doctor = await consult.join("c-d", "Dr. Lee", ROLE_DOCTOR)
        await consult.router.request_documentation(doctor)
        await consult.router.drain()
        return patient, doctor

    patient, doctor = asyncio.run(scenario())
    assert doctor.payloads("error") == [
        {"message": "Failed to generate documentation", "code": "model_unavailable", "event": "request-documentation"}
    ]
    assert patient.events == []


@pytest.mark.parametrize("seed", range(8))
def test_role_isolation_holds_for_random_sessions(seed):
    rng = random.Random(seed)
    phrases = ["hello", "@ai what next?", "thanks", "@Ai explain my labs", "ok", "see you"]

    async def scenario():
        consult = Consultation(FakeModel(default="assistant says hi"))
        connections = [
            await consult.join("c-p1", "Pat", ROLE_PATIENT),
            await consult.join("c-d1", "Dr. Lee", ROLE_DOCTOR),
            await consult.join("c-p2", "Pat", ROLE_PATIENT),
        ]
        roles = {"c-p1": ROLE_PATIENT, "c-d1": ROLE_DOCTOR, "c-p2": ROLE_PATIENT}
        for _ in range(25):
            sender = rng.choice(connections)
            await consult.router.handle_chat(sender, rng.choice(phrases))
            if rng.random() < 0.3:
                await consult.router.drain()
        await consult.router.drain()
        late_doctor = FakeConnection("c-d2")
        late_patient = FakeConnection("c-p3")
        await consult.presence.join(late_doctor, room_id="room-1", nickname="Dr. Lee", role=ROLE_DOCTOR)
        await consult.presence.join(late_patient, room_id="room-1", nickname="Pat", role=ROLE_PATIENT)
        return consult, connections, roles, late_doctor, late_patient

    consult, connections, roles, late_doctor, late_patient = asyncio.run(scenario())

    for connection in connections:
        role = roles[connection.connection_id]
        for event, data in connection.events:
            if event in _MESSAGE_EVENTS:
                assert data.get("forRole") in (None, role)

    room = consult.store.get_room("room-1")
    seqs = [message.seq for message in room.messages]
    assert seqs == sorted(seqs) and len(set(seqs)) == len(seqs)

    for late, role in ((late_doctor, ROLE_DOCTOR), (late_patient, ROLE_PATIENT)):
        replay = late.payloads("room-history")[0]["messages"]
        assert all(message.get("forRole") in (None, role) for message in replay)
        assert [message["seq"] for message in replay] == [m.seq for m in room.messages_for(role)]


def test_strip_ai_mention():
    assert strip_ai_mention("@AI  what is this? @ai") == "what is this?"
