"""
Toolhost · Structured Logging Setup.

Handler und Renderer:
  - stderr:  farbige Konsole oder JSON (json_logs=True)
  - Datei:   immer JSON-Lines, rotierend (log_dir/toolhost.jsonl)

stdout gehört dem stdio-Transport und wird nie beschrieben.

Verwendung in jedem Modul:
    from toolhost.utils.logging import get_logger
    log = get_logger(__name__)
    log.info("event_name", key="value")

Request-IDs werden über bind_context() an alle folgenden Zeilen des
aktuellen asyncio-Kontexts gehängt.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from pathlib import Path

LOG_FILE_NAME = "toolhost.jsonl"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# Bibliotheken, die auf INFO zu gesprächig sind
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access", "uvicorn.error")

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Gibt einen structlog-Logger zurück."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_PRE_CHAIN,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )


def _json_renderer() -> structlog.types.Processor:
    return structlog.processors.JSONRenderer(ensure_ascii=False, default=str)


def _stderr_handler(json_logs: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if json_logs:
        renderer = _json_renderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    handler.setFormatter(_formatter(renderer))
    return handler


def _file_handler(log_dir: Path) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(_json_renderer()))
    return handler


def _stderr_print_logger(*args: Any) -> structlog.PrintLogger:
    # sys.stderr erst beim Erzeugen auflösen (pytest tauscht die Streams)
    return structlog.PrintLogger(sys.stderr)


def configure_default_logging() -> None:
    """Minimal-Konfiguration vor setup_logging(): alles auf stderr.

    structlogs Default schreibt auf stdout und würde das stdio-Protokoll
    zerstören, bevor die CLI setup_logging() aufgerufen hat.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        logger_factory=_stderr_print_logger,
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        cache_logger_on_first_use=False,
    )


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Path | None = None,
    json_logs: bool = False,
    console: bool = True,
) -> None:
    """Initialisiert das Logging. Darf mehrfach aufgerufen werden (Tests, CLI).

    Args:
        level: DEBUG, INFO, WARNING oder ERROR.
        log_dir: Verzeichnis für die JSONL-Datei. None = keine Datei.
        json_logs: JSON statt Konsolenformat auf stderr.
        console: False = nichts auf stderr (z.B. in Tests).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = []
    if console:
        stderr = _stderr_handler(json_logs)
        stderr.setLevel(log_level)
        handlers.append(stderr)
    if log_dir is not None:
        handlers.append(_file_handler(log_dir))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        root.addHandler(handler)
    # Root-Level: das niedrigste aktive Handler-Level, damit die Datei DEBUG erhält
    root.setLevel(min([log_level, *(h.level for h in handlers if h.level)]))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_PRE_CHAIN,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def bind_context(**kwargs: Any) -> None:
    """Bindet Kontext-Variablen (z.B. request_id) an folgende Log-Zeilen."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Entfernt alle gebundenen Kontext-Variablen."""
    structlog.contextvars.clear_contextvars()


if not structlog.is_configured():
    configure_default_logging()
