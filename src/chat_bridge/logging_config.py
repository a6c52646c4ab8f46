import logging
import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")


@runtime_checkable
class LogSink(Protocol):
    def attach(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class ConsoleSink:
    def attach(self, level: str) -> int:
        return logger.add(
            sys.stderr,
            level=level,
            format=(
                "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
            ),
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class RotatingFileSink:
    def __init__(self, path: str = "chat_bridge.log", rotation: str = "10 MB", retention: int = 3):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def attach(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        # enqueue: request handlers and worker threads log concurrently
        return logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {self._rotation} rotation, keep {self._retention}, {level})"


_SINK_TYPES: dict[str, type] = {
    "console": ConsoleSink,
    "file": RotatingFileSink,
}


class StdlibBridge(logging.Handler):
    """Re-emits standard ``logging`` records (uvicorn, FastAPI) through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def route_server_logging(level: str) -> None:
    logging.basicConfig(handlers=[StdlibBridge()], level=level, force=True)
    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = []
        server_logger.propagate = True


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's default sink with the configured ones.

    ``consumers`` entries look like ``{"type": "file", "path": "...", "level": "DEBUG"}``;
    without any, logs go to the console and ``chat_bridge.log``. Returns one
    description per attached sink.
    """
    logger.remove()
    if consumers is None:
        consumers = [{"type": "console"}, {"type": "file"}]

    descriptions: list[str] = []
    for entry in consumers:
        sink_type = entry.get("type", "")
        cls = _SINK_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue
        sink_level = entry.get("level", level)
        sink = cls(**{k: v for k, v in entry.items() if k not in ("type", "level")})
        sink.attach(sink_level)
        descriptions.append(sink.describe(sink_level))

    route_server_logging(level)
    return descriptions
