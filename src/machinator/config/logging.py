"""Logging configuration using structlog on top of stdlib handlers.

Records go to stderr in the configured format. With a logs directory every
record is also appended to ``machinator.log`` as one JSON object per line,
so a run can still be read after the terminal is gone.
"""

import logging
import os
import sys
from pathlib import Path

import structlog

LOG_FORMATS = ("console", "json")
LOG_FILENAME = "machinator.log"

# marks handlers installed here so a second call replaces them
_HANDLER_ATTR = "_machinator_handler"


def _formatter(format_value: str, pre_chain: list, colors: bool = False) -> logging.Formatter:
    if format_value == "console":
        renderers = [structlog.dev.ConsoleRenderer(colors=colors)]
    else:
        renderers = [
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )


def configure_logging(
    debug: bool = False, log_format: str | None = None, logs_dir: Path | None = None
) -> None:
    """Configure structured logging with structlog.

    Args:
        debug: Log at DEBUG instead of INFO
        log_format: "console" or "json"; defaults to MACHINATOR_LOG_FORMAT
        logs_dir: Directory for the JSON log file, None for stderr only

    Raises:
        ValueError: If log_format is not a known format
    """
    log_level = logging.DEBUG if debug else logging.INFO
    format_value = (log_format or os.getenv("MACHINATOR_LOG_FORMAT", "console")).lower()
    if format_value not in LOG_FORMATS:
        raise ValueError(f"unknown log format {format_value!r}, expected one of {LOG_FORMATS}")

    pre_chain = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(_formatter(format_value, pre_chain, colors=sys.stderr.isatty()))
    handlers: list[logging.Handler] = [stream_handler]

    if logs_dir is not None:
        logs_dir = Path(logs_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logs_dir / LOG_FILENAME, encoding="utf-8")
        file_handler.setFormatter(_formatter("json", pre_chain))
        handlers.append(file_handler)

    root = logging.getLogger()
    for old in [h for h in root.handlers if getattr(h, _HANDLER_ATTR, False)]:
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        setattr(handler, _HANDLER_ATTR, True)
        root.addHandler(handler)
    root.setLevel(log_level)
