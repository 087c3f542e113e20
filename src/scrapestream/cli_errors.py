"""Centralized error handling for CLI operations"""

import json
import logging
import sys
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from .errors import NoProxyAvailable, ProxyParseError, ScrapeStreamError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class CLIError(Exception):
    """Base exception for CLI operations."""

    exit_code = 1

    def __init__(self, message: str, context: Optional[str] = None):
        self.message = message
        self.context = context
        super().__init__(message)


class FileError(CLIError):
    exit_code = 2


class ConfigError(CLIError):
    exit_code = 3


class DataError(CLIError):
    exit_code = 4


class NetworkError(CLIError):
    exit_code = 5


def format_error_message(
    error: Exception, context: Optional[str] = None, include_traceback: bool = False
) -> str:
    """
    Format error message for user display.

    Args:
        error: Exception that occurred
        context: Additional context about operation
        include_traceback: Whether to include full traceback
    """
    error_types = {
        FileNotFoundError: "File not found",
        json.JSONDecodeError: "Invalid JSON",
        ValueError: "Invalid value",
        PermissionError: "Permission denied",
        TimeoutError: "Operation timeout",
        ConnectionError: "Connection failed",
        ProxyParseError: "Invalid proxy",
        NoProxyAvailable: "No proxy available",
        KeyboardInterrupt: "Operation cancelled",
    }

    error_name = error_types.get(type(error), type(error).__name__)
    message = f"❌ {context}: {error_name}" if context else f"❌ {error_name}"

    if str(error):
        message += f" - {error}"

    if include_traceback:
        import traceback

        message += f"\n{traceback.format_exc()}"

    return message


def _fail(message: str, exit_code: int) -> None:
    print(message, file=sys.stderr)
    logger.debug("CLI error (exit %d): %s", exit_code, message)
    sys.exit(exit_code)


def handle_cli_errors(
    context: str = "", exit_on_keyboard_interrupt: bool = True
) -> Callable[[F], F]:
    """
    Decorator mapping exceptions raised by a command to messages and exit codes.

    Exit codes: 1 unexpected, 2 file, 3 config/JSON, 4 data/validation,
    5 network or no usable proxy, 130 interrupted.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except KeyboardInterrupt:
                if not exit_on_keyboard_interrupt:
                    raise
                _fail("\n⚠️  Operation cancelled by user", 130)
            except CLIError as e:
                _fail(format_error_message(e, context or e.context), e.exit_code)
            except (FileNotFoundError, PermissionError) as e:
                _fail(format_error_message(e, context or "File operation"), 2)
            except json.JSONDecodeError as e:
                op_context = context or "Data processing"
                _fail(f"❌ {op_context}: Invalid JSON at line {e.lineno}: {e.msg}", 3)
            except (NoProxyAvailable, TimeoutError, ConnectionError) as e:
                _fail(format_error_message(e, context or "Network operation"), 5)
            except (ProxyParseError, ValueError) as e:
                _fail(format_error_message(e, context or "Validation"), 4)
            except ScrapeStreamError as e:
                _fail(format_error_message(e, context or "Pipeline"), 1)
            except Exception as e:
                _fail(format_error_message(e, context or "Operation", include_traceback=True), 1)

        return wrapper  # type: ignore

    return decorator
