"""Rust-style error display for mortiscope startup, registration and config errors."""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

# Absolute path to the mortiscope package directory.
# Used by _find_user_frame to distinguish library frames from user code.
_MORTISCOPE_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for startup/validation errors.

    Organized by category:
    - E001-E099: Workflow definition errors
    - E100-E199: Event errors
    - E200-E299: Config errors
    - E300-E399: Registry errors
    """

    # Workflow definition (E001-E099)
    WORKFLOW_NO_ID = 'E001'
    WORKFLOW_HANDLER_NOT_ASYNC = 'E002'
    WORKFLOW_HOOK_NOT_ASYNC = 'E003'
    WORKFLOW_DUPLICATE_STEP = 'E004'
    WORKFLOW_INVALID_CONCURRENCY_KEY = 'E005'

    # Events (E100-E199)
    EVENT_UNKNOWN = 'E100'
    EVENT_INVALID_PAYLOAD = 'E101'

    # Config (E200-E299)
    BROKER_INVALID_URL = 'E200'
    CONFIG_MISSING_ANALYSIS_SERVICE = 'E201'
    CONFIG_INVALID_EXECUTOR = 'E202'
    CLI_INVALID_ARGS = 'E204'
    CLI_INVALID_LOCATOR = 'E205'

    # Registry (E300-E399)
    WORKFLOW_NOT_REGISTERED = 'E300'
    WORKFLOW_DUPLICATE_ID = 'E301'


# ANSI color codes
class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('MORTISCOPE_FORCE_COLOR'):
        return True
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    @classmethod
    def from_function(cls, fn: Callable[..., Any]) -> SourceLocation | None:
        """Create SourceLocation from a function object.

        Returns None for callables without code objects (builtins, mocks).
        """
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(file=code.co_filename, line=code.co_firstlineno)

    def get_source_line(self) -> str | None:
        try:
            line = linecache.getline(self.file, self.line)
            return line.rstrip('\n') if line else None
        except Exception:
            return None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


@dataclass
class MortiscopeError(Exception):
    """Base exception for mortiscope startup/validation errors.

    Carries an error code, an optional source location and free-form notes,
    rendered rustc-style by format_rust_style().
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> MortiscopeError:
        self.notes.append(note)
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        # error[E201]: message
        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )
            source_line = self.location.get_source_line()
            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                stripped = source_line.lstrip()
                indent = len(source_line) - len(stripped)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} '
                    f"{c.RED}{' ' * indent}{'^' * len(stripped)}{c.RESET}"
                )

        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text rendering, safe for logs and database columns."""
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _mortiscope_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for MortiscopeError exceptions."""
    if _env_flag('MORTISCOPE_PLAIN_ERRORS') or not isinstance(
        exc_value, MortiscopeError
    ):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('MORTISCOPE_VERBOSE'):
        print(file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _mortiscope_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


def error_message(error: BaseException) -> str:
    """Return the short human-readable message of an exception.

    MortiscopeError renders multi-line rustc output from __str__; records that
    surface errors to users only want the one-line message.
    """
    match error:
        case MortiscopeError(message=message):
            return message
        case _:
            return str(error) or type(error).__name__


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class WorkflowDefinitionError(MortiscopeError):
    """Raised when a workflow definition or its step usage is invalid."""

    pass


@dataclass
class EventValidationError(MortiscopeError):
    """Raised when an event name is unknown or its payload does not match."""

    pass


@dataclass
class ConfigurationError(MortiscopeError):
    """Raised when app, store or service configuration is invalid or missing."""

    pass


@dataclass
class RegistryError(MortiscopeError):
    """Raised when a workflow registry operation fails."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple MortiscopeError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[MortiscopeError] = []

    def add(self, error: MortiscopeError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to '
            f'{len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(MortiscopeError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Location is per-error in the report
        super(MortiscopeError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """Find the first frame outside of mortiscope internals."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if filename.startswith('<'):
            frame = frame.f_back
            continue
        if (
            not filename.startswith(_MORTISCOPE_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None


def workflow_definition_error(
    message: str,
    *,
    code: ErrorCode | None = None,
    fn: Callable[..., Any] | None = None,
    notes: list[str] | None = None,
    help_text: str | None = None,
) -> WorkflowDefinitionError:
    """Create a WorkflowDefinitionError located at `fn` when given."""
    location = SourceLocation.from_function(fn) if fn is not None else None
    return WorkflowDefinitionError(
        message=message,
        code=code,
        location=location,
        notes=notes or [],
        help_text=help_text,
    )
