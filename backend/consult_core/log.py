from __future__ import annotations

import inspect
import logging
import sys
from typing import TextIO

_DEFAULT_FORMAT = "%(asctime)s - %(levelname)s [%(name)s%(tag)s] %(message)s"
_DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class TaggedFormatter(logging.Formatter):
    """Formatter that tolerates records emitted without a tag."""

    def __init__(self, fmt: str = _DEFAULT_FORMAT, datefmt: str = _DEFAULT_DATE_FORMAT) -> None:
        super().__init__(fmt, datefmt)

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "tag"):
            record.tag = ""
        return super().format(record)


def setup_logging(level: int | str = logging.INFO, stream: TextIO = sys.stdout) -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; later calls only adjust the level.
    """
    root_logger = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root_logger.setLevel(level)
    if any(isinstance(handler.formatter, TaggedFormatter) for handler in root_logger.handlers):
        return
    handler = logging.StreamHandler(stream=stream)
    handler.setFormatter(TaggedFormatter())
    root_logger.addHandler(handler)


def logger(tag: str | None = None, *, name: str | None = None) -> logging.LoggerAdapter:
    """Return a logger adapter that stamps `tag` onto every record.

    `name` defaults to the calling module, so `logger(tag="router")` inside
    `consult_core/router.py` logs as `consult_core.router:router`.
    """
    logger_name = name
    if logger_name is None:
        frame = inspect.stack()[1]
        module = inspect.getmodule(frame[0])
        logger_name = module.__name__ if module else "consult"
    return logging.LoggerAdapter(
        logging.getLogger(logger_name),
        {"tag": f":{tag}" if tag is not None else ""},
    )
