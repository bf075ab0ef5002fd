from .config import ConsultSettings
from .connections import Connection, ConnectionDirectory, WebSocketConnection
from .errors import (
    ConsultError,
    Forbidden,
    ModelUnavailable,
    NotFound,
    PayloadTooLarge,
    RateLimited,
    ValidationError,
)
from .log import logger, setup_logging
from .models import (
    ROLE_DOCTOR,
    ROLE_PATIENT,
    ConnectionBinding,
    HealthMetrics,
    Invitation,
    Message,
    Room,
    UploadedFile,
)
from .presence import PresenceController
from .rate_limit import FixedWindowRateLimiter
from .store import SessionStore
from .video import VideoSignalingController

__all__ = [
    "ROLE_DOCTOR",
    "ROLE_PATIENT",
    "Connection",
    "ConnectionBinding",
    "ConnectionDirectory",
    "ConsultError",
    "ConsultSettings",
    "FixedWindowRateLimiter",
    "Forbidden",
    "HealthMetrics",
    "Invitation",
    "Message",
    "ModelUnavailable",
    "NotFound",
    "PayloadTooLarge",
    "PresenceController",
    "RateLimited",
    "Room",
    "SessionStore",
    "UploadedFile",
    "ValidationError",
    "VideoSignalingController",
    "WebSocketConnection",
    "logger",
    "setup_logging",
]
