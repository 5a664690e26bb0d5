"""CLI error handling utilities.

This module provides standardized error handling for CLI commands.
Library exceptions are mapped onto stable exit codes here so that the
lineage engine itself never has to know about the command line.
"""

from __future__ import annotations

import functools
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TypeVar

import typer

from lineagescope.lineage.base import ConfigError, LineageError
from lineagescope.workspace import IndexLoadError

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================


class ErrorCode(Enum):
    """Standard CLI error codes."""

    # General errors (1-9)
    GENERAL_ERROR = 1
    USAGE_ERROR = 2

    # File errors (10-19)
    FILE_NOT_FOUND = 10
    FILE_NOT_READABLE = 11
    INVALID_FILE_FORMAT = 13

    # Configuration errors (30-39)
    CONFIG_INVALID = 31

    # Lineage errors (60-69)
    LINEAGE_ERROR = 60
    NOT_FOUND = 61


# =============================================================================
# Exception Classes
# =============================================================================


class CLIError(Exception):
    """Base exception for CLI errors.

    Attributes:
        message: Error message
        code: Error code
        hint: Helpful hint for resolution
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.GENERAL_ERROR,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.hint = hint

    def __str__(self) -> str:
        parts = [self.message]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        return "\n".join(parts)


class MissingFileError(CLIError):
    """Error when an input file is not found."""

    def __init__(self, path: Path | str, description: str = "File") -> None:
        super().__init__(
            message=f"{description} not found: {path}",
            code=ErrorCode.FILE_NOT_FOUND,
            hint="Check that the file exists and the path is correct.",
        )
        self.path = path


class InvalidOptionError(CLIError):
    """Error when an option value is not one of the accepted choices."""

    def __init__(self, option: str, value: str, choices: list[str]) -> None:
        super().__init__(
            message=f"Invalid value for {option}: {value!r}",
            code=ErrorCode.USAGE_ERROR,
            hint=f"Choose one of: {', '.join(choices)}",
        )
        self.option = option
        self.value = value


class NodeLookupError(CLIError):
    """Error when a requested node is not in the lineage graph."""

    def __init__(self, node_id: str) -> None:
        super().__init__(
            message=f"Node '{node_id}' not found in lineage graph",
            code=ErrorCode.NOT_FOUND,
            hint="Node ids look like 'table:sales.orders' or 'view:daily_revenue'; "
            "run the summary command to list them.",
        )
        self.node_id = node_id


# =============================================================================
# Decorator
# =============================================================================


F = TypeVar("F", bound=Callable[..., Any])


def _exit_code_for(error: Exception) -> tuple[ErrorCode, str | None]:
    if isinstance(error, IndexLoadError):
        return ErrorCode.INVALID_FILE_FORMAT, "The index must be a JSON or YAML workspace index."
    if isinstance(error, ConfigError):
        return ErrorCode.CONFIG_INVALID, "Check the configuration file format and values."
    if isinstance(error, LineageError):
        return ErrorCode.LINEAGE_ERROR, None
    if isinstance(error, FileNotFoundError):
        return ErrorCode.FILE_NOT_FOUND, None
    if isinstance(error, (OSError, UnicodeDecodeError)):
        return ErrorCode.FILE_NOT_READABLE, "Check file permissions and that the path is a UTF-8 text file."
    return ErrorCode.GENERAL_ERROR, None


def error_boundary(func: F) -> F:
    """Error boundary decorator for CLI commands.

    Converts exceptions into a one-line message on stderr and an exit code.

    Args:
        func: Function to wrap

    Returns:
        Wrapped function
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except CLIError as e:
            typer.echo(typer.style(f"Error: {e.message}", fg="red"), err=True)
            if e.hint:
                typer.echo(typer.style(f"Hint: {e.hint}", fg="yellow"), err=True)
            raise typer.Exit(e.code.value)
        except Exception as e:
            code, hint = _exit_code_for(e)
            if code == ErrorCode.GENERAL_ERROR:
                logger.exception("Unexpected error")
            typer.echo(typer.style(f"Error: {e}", fg="red"), err=True)
            if hint:
                typer.echo(typer.style(f"Hint: {hint}", fg="yellow"), err=True)
            raise typer.Exit(code.value)

    return wrapper  # type: ignore


# =============================================================================
# Validation Helpers
# =============================================================================


def require_file(path: Path, description: str = "File") -> Path:
    """Require that a file exists.

    Raises:
        MissingFileError: If file doesn't exist
    """
    if not path.exists():
        raise MissingFileError(path, description)
    return path
