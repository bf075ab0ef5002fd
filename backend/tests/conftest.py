from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from fakes import FakeModel  # noqa: E402

_PROVIDER_KEYS = ("GROQ_API_KEY", "ANTHROPIC_API_KEY", "OPENROUTER_API_KEY", "OPENAI_API_KEY", "CONSULT_CHAT_PROVIDER")


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    monkeypatch.setenv("CONSULT_UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("RATE_LIMIT_MAX", "1000")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", str(6 * 60 * 60 * 1000))
    monkeypatch.setenv("ALLOWED_ORIGINS", "http://localhost:3000")
    # Keep CI deterministic; no test may reach a real provider.
    for key in _PROVIDER_KEYS:
        monkeypatch.delenv(key, raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def app_state(backend_module, fake_model, monkeypatch):
    state = backend_module.ConsultApp(model=fake_model)
    monkeypatch.setattr(backend_module, "container", state)
    return state


@pytest.fixture
def client(backend_module, app_state):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def create_room(client) -> Callable[..., dict]:
    def _make(doctor_email: str = "dr.house@clinic.test", patient_email: str = "pat@home.test") -> dict:
        response = client.post(
            "/api/create-room",
            json={"doctorEmail": doctor_email, "patientEmail": patient_email},
        )
        assert response.status_code == 200
        return response.json()

    return _make
