"""Centralized logging configuration for nmbatch."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nmbatch.models import JobDescriptor

_STREAM_HANDLER_ID = "nmbatch_stream"
_FILE_HANDLER_ID = "nmbatch_file"
_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"


def _resolve_level(level: int | None) -> int:
    if level is not None:
        return level
    env_level = os.environ.get("NMBATCH_LOG_LEVEL", "").strip().upper()
    resolved = getattr(logging, env_level, None) if env_level else None
    if resolved is None:
        return logging.WARNING
    return int(resolved)


def _mark_handler(handler: logging.Handler, handler_id: str) -> None:
    setattr(handler, "_nmbatch_handler_id", handler_id)


def _get_handler(root: logging.Logger, handler_id: str) -> logging.Handler | None:
    for handler in root.handlers:
        if getattr(handler, "_nmbatch_handler_id", None) == handler_id:
            return handler
    return None


class JobLogAdapter(logging.LoggerAdapter):
    """Prefix records with a job's ``[<base>]`` tag and attach its identity.

    The full identity travels as ``record.job``; two jobs may share a base name.
    """

    def __init__(self, logger: logging.Logger, job: JobDescriptor):
        super().__init__(logger, {"job": job.identity})
        self.tag = job.log_identifier

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("job", self.extra["job"])
        kwargs["extra"] = extra
        return f"{self.tag} {msg}", kwargs


def get_logger(
    name: str, job: JobDescriptor | None = None
) -> logging.Logger | JobLogAdapter:
    """Child logger under ``nmbatch``; bound to *job* when one is given."""
    logger = logging.getLogger(f"nmbatch.{name}")
    if job is None:
        return logger
    return JobLogAdapter(logger, job)


def setup_logging(*, level: int | None = None) -> None:
    """Configure the root ``nmbatch`` logger.

    The stream level comes from *level* or the ``NMBATCH_LOG_LEVEL``
    environment variable (DEBUG, INFO, WARNING, ERROR). When
    ``NMBATCH_LOG_FILE`` is set, a file handler is attached that records at
    least INFO-level job lifecycle events. Calling this repeatedly reuses the
    handlers installed by earlier calls.
    """
    stream_level = _resolve_level(level)

    root = logging.getLogger("nmbatch")
    stream_handler = _get_handler(root, _STREAM_HANDLER_ID)
    if stream_handler is None:
        stream_handler = logging.StreamHandler()
        _mark_handler(stream_handler, _STREAM_HANDLER_ID)
        root.addHandler(stream_handler)
    stream_handler.setFormatter(logging.Formatter(_FORMAT))
    stream_handler.setLevel(stream_level)

    file_path_raw = os.environ.get("NMBATCH_LOG_FILE", "").strip()
    file_level: int | None = None
    file_handler = _get_handler(root, _FILE_HANDLER_ID)
    if file_path_raw:
        file_path = Path(file_path_raw).expanduser().resolve()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        if (
            file_handler is None
            or not isinstance(file_handler, logging.FileHandler)
            or Path(file_handler.baseFilename).resolve() != file_path
        ):
            if file_handler is not None:
                root.removeHandler(file_handler)
                file_handler.close()
            file_handler = logging.FileHandler(file_path, encoding="utf-8")
            _mark_handler(file_handler, _FILE_HANDLER_ID)
            root.addHandler(file_handler)
        file_level = min(stream_level, logging.INFO)
        file_handler.setFormatter(logging.Formatter(_FORMAT))
        file_handler.setLevel(file_level)
    elif file_handler is not None:
        root.removeHandler(file_handler)
        file_handler.close()

    effective_level = stream_level
    if file_level is not None:
        effective_level = min(effective_level, file_level)
    root.setLevel(effective_level)
