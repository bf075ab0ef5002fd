from __future__ import annotations

import io
import logging

from consult_core.config import ConsultSettings
from consult_core.log import TaggedFormatter, logger


def test_settings_read_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.test, https://b.test ,")
    monkeypatch.setenv("RATE_LIMIT_MAX", "25")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "90000")
    monkeypatch.setenv("CONSULT_UPLOAD_DIR", str(tmp_path))
    monkeypatch.setenv("CONSULT_LOG_LEVEL", "debug")

    settings = ConsultSettings.from_env()

    assert settings.allowed_origins == ["https://a.test", "https://b.test"]
    assert settings.rate_limit_max == 25
    assert settings.rate_limit_window_seconds == 90.0
    assert settings.upload_dir == str(tmp_path)
    assert settings.log_level == "DEBUG"


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX", "lots")
    monkeypatch.delenv("RATE_LIMIT_WINDOW_MS", raising=False)

    settings = ConsultSettings.from_env()

    assert settings.rate_limit_max == 10
    assert settings.rate_limit_window_seconds == 6 * 60 * 60


def test_tagged_logger_stamps_records():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(TaggedFormatter("%(name)s%(tag)s %(message)s"))
    log = logger(tag="router", name="consult.test")
    log.logger.addHandler(handler)
    log.logger.setLevel(logging.INFO)
    try:
        log.info("hello %s", "room")
        logging.getLogger("consult.plain").addHandler(handler)
        logging.getLogger("consult.plain").warning("untagged")
    finally:
        log.logger.removeHandler(handler)
        logging.getLogger("consult.plain").removeHandler(handler)

    assert stream.getvalue().splitlines() == ["consult.test:router hello room", "consult.plain untagged"]
