from __future__ import annotations

import logging
import re
import sys
from pathlib import Path
from typing import Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to mask proxy credentials, API keys and e-mail addresses in log messages."""

    PATTERNS = {
        "proxy_auth": r"(?<=://)[^/\s:@]+:[^/\s@]+@",
        "api_key": r"(?:key|api_key|token)=[A-Za-z0-9_\-]{8,}",
        "uuid": r"(?:id|uuid|password|token)\s*[=:]\s*[a-f0-9\-]{16,}",
        "email": r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}",
    }

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        message = re.sub(self.PATTERNS["proxy_auth"], "[MASKED_AUTH]@", message)
        message = re.sub(self.PATTERNS["api_key"], "key=[MASKED_KEY]", message)
        message = re.sub(self.PATTERNS["uuid"], "[MASKED_CREDENTIAL]", message, flags=re.IGNORECASE)
        message = re.sub(self.PATTERNS["email"], "[MASKED_EMAIL]", message)

        record.msg = message
        record.args = ()
        return True


class ColoredFormatter(logging.Formatter):
    """Formatter that adds ANSI colours for terminal output."""

    COLOURS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelno, "")
        if colour:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{colour}{record.levelname}{self.RESET}"
        return super().format(record)


def _resolve_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    level: str = "INFO",
    mask_sensitive: bool = True,
    *,
    log_file: Optional[str | Path] = None,
    format_style: str = "detailed",
    use_color: Optional[bool] = None,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        mask_sensitive: Mask proxy credentials, API keys and e-mails.
        log_file: Optional log file path; None disables file logging.
        format_style: "detailed" includes module/line, "simple" prints message.
        use_color: Force colour output. Defaults to auto-detect (TTY only).
    """
    level_value = _resolve_level(level)

    if format_style == "detailed":
        fmt = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
    else:
        fmt = "%(levelname)s - %(message)s"

    colour_output = use_color if use_color is not None else sys.stderr.isatty()

    root_logger = logging.getLogger()
    root_logger.setLevel(level_value)
    root_logger.handlers.clear()

    # stderr keeps stdout free for command output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level_value)
    console_handler.setFormatter(ColoredFormatter(fmt) if colour_output else logging.Formatter(fmt))
    handlers = [console_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level_value)
        file_handler.setFormatter(logging.Formatter(fmt))
        handlers.append(file_handler)

    for handler in handlers:
        # Handler-level so records from child loggers are masked too
        if mask_sensitive:
            handler.addFilter(SensitiveDataFilter())
        root_logger.addHandler(handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
