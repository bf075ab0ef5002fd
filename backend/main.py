from __future__ import annotations

import json
import os
import re
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from consult_ai import ContentExtractor, DocumentIngest, DocumentPipeline, HttpLanguageModel, LanguageModel, LocalContentExtractor
from consult_ai.documents import is_analyzable
from consult_core import (
    ConnectionDirectory,
    ConsultError,
    ConsultSettings,
    FixedWindowRateLimiter,
    NotFound,
    PayloadTooLarge,
    PresenceController,
    RateLimited,
    SessionStore,
    ValidationError,
    VideoSignalingController,
    WebSocketConnection,
    logger,
    setup_logging,
)
from consult_core.models import ROLES
from consult_core.router import MessageRouter
from consult_core.store import invite_link
from consult_core.time_utils import to_iso, utc_now

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._ -]+")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

_log = logger(tag="http")

SERVICE_NAME = "consult-room-backend"
ROOM_DELETED_RESPONSE = "Room deleted successfully"


class CreateRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    doctor_email: str | None = Field(default=None, alias="doctorEmail")
    patient_email: str | None = Field(default=None, alias="patientEmail")


class ValidateRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_hash: str | None = Field(default=None, alias="roomHash")
    user_email: str | None = Field(default=None, alias="userEmail")


class DeleteRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    doctor_email: str | None = Field(default=None, alias="doctorEmail")


class ConsultApp:
    def __init__(
        self,
        settings: ConsultSettings | None = None,
        *,
        model: LanguageModel | None = None,
        extractor: ContentExtractor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or ConsultSettings.from_env()
        self.store = SessionStore()
        self.directory = ConnectionDirectory()
        self.model = model or HttpLanguageModel(timeout_seconds=self.settings.chat_timeout_seconds)
        self.extractor = extractor or LocalContentExtractor()
        self.presence = PresenceController(self.store, self.directory)
        self.video = VideoSignalingController(self.store, self.directory)
        self.router = MessageRouter(self.store, self.directory, self.model)
        self.pipeline = DocumentPipeline(self.store, self.directory, self.model)
        self.limiter = FixedWindowRateLimiter(
            max_requests=self.settings.rate_limit_max,
            window_seconds=self.settings.rate_limit_window_seconds,
            clock=clock,
        )
        self.started_at = time.monotonic()
        self.upload_dir = Path(self.settings.upload_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)


container = ConsultApp()
setup_logging(container.settings.log_level)
app = FastAPI(title="Consult Room Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=container.settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/uploads", StaticFiles(directory=str(container.upload_dir), check_dir=False), name="uploads")


@app.exception_handler(ConsultError)
async def consult_error_handler(request: Request, exc: ConsultError) -> JSONResponse:
    if isinstance(exc, RateLimited):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "Too many requests", "message": exc.message, "retryAfter": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def enforce_rate_limit(request: Request) -> None:
    client_ip = request.client.host if request.client else "unknown"
    container.limiter.check(client_ip)


def _safe_upload_name(upload: UploadFile) -> str:
    file_name = Path((upload.filename or "").strip()).name
    file_name = _UNSAFE_FILENAME_RE.sub("_", file_name).strip()
    return file_name or "upload"


async def _read_upload_bytes(upload: UploadFile, *, max_bytes: int) -> bytes:
    raw = await upload.read(max_bytes + 1)
    if len(raw) > max_bytes:
        raise PayloadTooLarge(f"File exceeds the upload limit of {max_bytes} bytes")
    if not raw:
        raise ValidationError("Uploaded file is empty")
    return raw


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": to_iso(utc_now()),
        "uptime": round(time.monotonic() - container.started_at, 3),
        "service": SERVICE_NAME,
    }


@app.post("/api/create-room", dependencies=[Depends(enforce_rate_limit)])
async def create_room(payload: CreateRoomRequest) -> dict[str, Any]:
    invitation = container.store.create_invitation(payload.doctor_email, payload.patient_email)
    return {
        "success": True,
        "roomHash": invitation.token,
        "roomId": invitation.room_id,
        "inviteLink": invite_link(invitation.token),
    }


@app.post("/api/validate-room", dependencies=[Depends(enforce_rate_limit)])
async def validate_room(payload: ValidateRoomRequest):
    try:
        role, room_id = container.store.validate_access(payload.room_hash, payload.user_email)
    except ConsultError as exc:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "valid": False})
    invitation = container.store.get_invitation(payload.room_hash)
    return {
        "valid": True,
        "roomId": room_id,
        "role": role,
        "patientEmail": invitation.patient_email,
        "doctorEmail": invitation.doctor_email,
    }


@app.get("/api/doctor-rooms", dependencies=[Depends(enforce_rate_limit)])
async def doctor_rooms(email: str | None = Query(default=None)) -> dict[str, Any]:
    return {"rooms": container.store.rooms_for_doctor(email)}


@app.get("/api/patient-rooms", dependencies=[Depends(enforce_rate_limit)])
async def patient_rooms(email: str | None = Query(default=None)) -> dict[str, Any]:
    return {"rooms": container.store.rooms_for_patient(email)}


@app.delete("/api/delete-room/{room_hash}", dependencies=[Depends(enforce_rate_limit)])
async def delete_room(room_hash: str, payload: DeleteRoomRequest | None = None) -> dict[str, Any]:
    doctor_email = payload.doctor_email if payload else None
    room_id = await container.presence.delete_room(room_hash, doctor_email)
    _log.info("Room %s deleted via invite %s", room_id, room_hash[:8])
    return {"success": True, "message": ROOM_DELETED_RESPONSE}


@app.post("/upload", dependencies=[Depends(enforce_rate_limit)])
async def upload_document(
    background_tasks: BackgroundTasks,
    file: UploadFile | None = File(default=None),
    room_id: str | None = Form(default=None, alias="roomId"),
    uploaded_by: str | None = Form(default=None, alias="uploadedBy"),
    uploader_role: str | None = Form(default=None, alias="uploaderRole"),
) -> dict[str, Any]:
    app_state = container
    room_id = (room_id or "").strip()
    uploaded_by = (uploaded_by or "").strip()
    if file is None or not room_id:
        raise ValidationError("File and roomId required")
    if not uploaded_by or not (uploader_role or "").strip():
        raise ValidationError("uploadedBy and uploaderRole required")
    if app_state.store.get_room(room_id) is None:
        raise NotFound("Room not found")
    role = uploader_role.strip().lower()
    if role not in ROLES:
        raise ValidationError("uploaderRole must be 'patient' or 'doctor'")

    file_name = _safe_upload_name(file)
    mime_type = (file.content_type or "application/octet-stream").lower().strip()
    raw = await _read_upload_bytes(file, max_bytes=app_state.settings.max_upload_bytes)

    stored_name = f"{int(time.time() * 1000)}-{file_name}"
    storage_path = app_state.upload_dir / stored_name
    await run_in_threadpool(storage_path.write_bytes, raw)
    content = await run_in_threadpool(app_state.extractor.extract, str(storage_path), mime_type)
    _log.info("Upload %s by %s in %s, extracted %d chars", file_name, uploaded_by, room_id, len(content))

    ingest = DocumentIngest(
        file_id=f"file_{uuid.uuid4().hex}",
        room_id=room_id,
        name=file_name,
        storage_path=str(storage_path),
        url=f"/uploads/{stored_name}",
        mime_type=mime_type,
        content=content,
        uploaded_by=uploaded_by,
        uploader_role=role,
    )
    background_tasks.add_task(app_state.pipeline.process, ingest)
    return {
        "success": True,
        "file": {
            "id": ingest.file_id,
            "name": ingest.name,
            "url": ingest.url,
            "type": ingest.mime_type,
            "uploadedBy": ingest.uploaded_by,
        },
        "analysisPending": is_analyzable(content),
    }


SocketHandler = Callable[[ConsultApp, WebSocketConnection, dict[str, Any]], Awaitable[Any]]
_VIDEO_EVENTS = {"start-video-call", "join-video-call", "leave-video-call", "end-video-call"}


async def _on_join_room(app_state: ConsultApp, connection: WebSocketConnection, data: dict[str, Any]) -> None:
    await app_state.presence.join(
        connection,
        room_id=data.get("roomId"),
        nickname=data.get("nickname"),
        role=data.get("role"),
        avatar_url=data.get("avatarUrl"),
        email=data.get("email"),
    )


async def _on_chat_message(app_state: ConsultApp, connection: WebSocketConnection, data: dict[str, Any]) -> None:
    await app_state.router.handle_chat(
        connection,
        data.get("message"),
        room_id=data.get("roomId"),
        avatar_url=data.get("avatarUrl"),
    )


async def _on_typing(app_state: ConsultApp, connection: WebSocketConnection, data: dict[str, Any]) -> None:
    await app_state.router.typing(connection, is_typing=bool(data.get("isTyping", True)), room_id=data.get("roomId"))


async def _on_request_documentation(app_state: ConsultApp, connection: WebSocketConnection, data: dict[str, Any]) -> None:
    await app_state.router.request_documentation(connection, room_id=data.get("roomId"))


async def _on_start_video(app_state: ConsultApp, connection: WebSocketConnection, data: dict[str, Any]) -> None:
    await app_state.video.start(connection, data.get("roomId"))


async def _on_join_video(app_state: ConsultApp, connection: WebSocketConnection, data: dict[str, Any]) -> None:
    await app_state.video.join(connection, data.get("peerId"), data.get("roomId"))


async def _on_leave_video(app_state: ConsultApp, connection: WebSocketConnection, data: dict[str, Any]) -> None:
    await app_state.video.leave(connection, data.get("peerId"), data.get("roomId"))


async def _on_end_video(app_state: ConsultApp, connection: WebSocketConnection, data: dict[str, Any]) -> None:
    await app_state.video.end(connection, data.get("roomId"))


_SOCKET_HANDLERS: dict[str, SocketHandler] = {
    "join-room": _on_join_room,
    "chat-message": _on_chat_message,
    "typing": _on_typing,
    "request-documentation": _on_request_documentation,
    "start-video-call": _on_start_video,
    "join-video-call": _on_join_video,
    "leave-video-call": _on_leave_video,
    "end-video-call": _on_end_video,
}


async def _dispatch_frame(app_state: ConsultApp, connection: WebSocketConnection, raw_frame: str) -> None:
    try:
        frame = json.loads(raw_frame)
    except json.JSONDecodeError:
        await app_state.directory.emit(connection, "error", {"message": "Frames must be JSON objects"})
        return
    if not isinstance(frame, dict):
        await app_state.directory.emit(connection, "error", {"message": "Frames must be JSON objects"})
        return

    event = str(frame.get("event") or "")
    data = frame.get("data")
    if not isinstance(data, dict):
        data = {}
    handler = _SOCKET_HANDLERS.get(event)
    if handler is None:
        await app_state.directory.emit(connection, "error", {"message": f"Unknown event: {event or '(none)'}"})
        return

    try:
        await handler(app_state, connection, data)
    except ConsultError as exc:
        error_event = "video-error" if event in _VIDEO_EVENTS else "error"
        await app_state.directory.emit(
            connection,
            error_event,
            {"message": exc.message, "code": exc.code, "event": event},
        )


@app.websocket("/ws")
async def consult_socket(websocket: WebSocket) -> None:
    app_state = container
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    _log.info("Connection opened: %s", connection.connection_id)
    try:
        while True:
            raw_frame = await websocket.receive_text()
            await _dispatch_frame(app_state, connection, raw_frame)
    except WebSocketDisconnect:
        _log.info("Connection closed: %s", connection.connection_id)
    finally:
        await app_state.presence.leave(connection.connection_id)
