# Made by trex099
# https://github.com/Trex099/Glint
"""
Error Handling and Messaging System for minipc

Every provisioning step either stops the phase (hard stop) or prints a
warning with a manual-intervention hint and lets the phase continue. This
module carries the error classification used to make that decision and
the handler that reports it.
"""

import logging
import traceback
import subprocess
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Callable
from dataclasses import dataclass, field

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from core_utils import print_warning, print_info, UserCancelled

console = Console()
logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for classification"""
    INFO = "info"
    WARNING = "warning"     # warn and continue
    ERROR = "error"         # hard stop of the current phase
    CRITICAL = "critical"   # hard stop, host may be left half configured


class ErrorCategory(Enum):
    """Error categories for systematic classification"""
    PERMISSION = "permission"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    HARDWARE = "hardware"
    NETWORK = "network"
    STORAGE = "storage"
    PROCESS = "process"
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    TUNNEL = "tunnel"
    UNKNOWN = "unknown"


@dataclass
class ErrorInfo:
    """Comprehensive error information structure"""
    message: str
    code: str
    severity: ErrorSeverity
    category: ErrorCategory
    details: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    exception: Optional[Exception] = None
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


class MinipcError(Exception):
    """Base exception class for all minipc errors"""
    def __init__(self,
                 message: str,
                 code: str = "MPC-E000",
                 severity: ErrorSeverity = ErrorSeverity.ERROR,
                 category: ErrorCategory = ErrorCategory.UNKNOWN,
                 details: Optional[str] = None,
                 suggestions: List[str] = None,
                 context: Dict[str, Any] = None,
                 original_exception: Exception = None):
        self.error_info = ErrorInfo(
            message=message,
            code=code,
            severity=severity,
            category=category,
            details=details,
            suggestions=suggestions or [],
            exception=original_exception,
            context=context or {}
        )
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.error_info.code

    @property
    def severity(self) -> ErrorSeverity:
        return self.error_info.severity

    @property
    def category(self) -> ErrorCategory:
        return self.error_info.category

    @property
    def suggestions(self) -> List[str]:
        return self.error_info.suggestions

    @property
    def details(self) -> Optional[str]:
        return self.error_info.details

    @property
    def context(self) -> Dict[str, Any]:
        return self.error_info.context

    @property
    def is_hard_stop(self) -> bool:
        return self.severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL)


# Specific error classes for different categories
class PermissionError(MinipcError):
    """Permission-related errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.PERMISSION)
        kwargs.setdefault('code', 'MPC-E100')
        super().__init__(message, **kwargs)


class ConfigurationError(MinipcError):
    """Configuration-related errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.CONFIGURATION)
        kwargs.setdefault('code', 'MPC-E200')
        super().__init__(message, **kwargs)


class ResourceError(MinipcError):
    """Resource availability errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.RESOURCE)
        kwargs.setdefault('code', 'MPC-E300')
        super().__init__(message, **kwargs)


class HardwareError(MinipcError):
    """Hardware-related errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.HARDWARE)
        kwargs.setdefault('code', 'MPC-E400')
        super().__init__(message, **kwargs)


class NetworkError(MinipcError):
    """Network-related errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.NETWORK)
        kwargs.setdefault('code', 'MPC-E500')
        super().__init__(message, **kwargs)


class StorageError(MinipcError):
    """Storage-related errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.STORAGE)
        kwargs.setdefault('code', 'MPC-E600')
        super().__init__(message, **kwargs)


class ProcessError(MinipcError):
    """External command errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.PROCESS)
        kwargs.setdefault('code', 'MPC-E700')
        super().__init__(message, **kwargs)


class ValidationError(MinipcError):
    """Input validation errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.VALIDATION)
        kwargs.setdefault('code', 'MPC-E800')
        super().__init__(message, **kwargs)


class DependencyError(MinipcError):
    """Missing dependency errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.DEPENDENCY)
        kwargs.setdefault('code', 'MPC-E900')
        super().__init__(message, **kwargs)


class TunnelError(MinipcError):
    """Cloudflare tunnel and API errors"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.TUNNEL)
        kwargs.setdefault('code', 'MPC-E1000')
        super().__init__(message, **kwargs)


class PhaseAborted(Exception):
    """Raised by run_step() when a hard-stop error ends the phase."""
    def __init__(self, step: str, error: MinipcError):
        self.step = step
        self.error = error
        super().__init__(f"{step}: {error}")


class ErrorHandler:
    """
    Centralized error handling for provisioning phases

    Converts exceptions into MinipcError, logs and displays them, and
    decides between hard stop and warn-and-continue.
    """

    def __init__(self):
        self.logger = logging.getLogger('minipc.error_handler')
        self.error_history: List[ErrorInfo] = []
        self.max_history_size = 100

    def handle_error(self, error: Exception, context: Dict[str, Any] = None) -> MinipcError:
        """Log, record and display an exception. Returns it as a MinipcError."""
        if not isinstance(error, MinipcError):
            error = self.convert_exception(error, context)
        if context:
            error.error_info.context.update(context)

        self._log_error(error)
        self._add_to_error_history(error.error_info)
        self.display_error(error)
        return error

    def convert_exception(self, exception: Exception,
                          context: Dict[str, Any] = None) -> MinipcError:
        """Convert a standard exception to a MinipcError"""
        if isinstance(exception, subprocess.CalledProcessError):
            cmd = exception.cmd if isinstance(exception.cmd, str) else " ".join(map(str, exception.cmd))
            return ProcessError(
                f"Command failed with exit code {exception.returncode}: {cmd}",
                code="MPC-E701",
                details=(exception.stderr or exception.output or "").strip() or None,
                suggestions=["Re-run the command by hand to see the full output",
                             "Check the log file in logs/minipc.log"],
                original_exception=exception,
                context=context
            )
        if isinstance(exception, FileNotFoundError):
            return DependencyError(
                f"Command or file not found: {exception.filename or exception}",
                code="MPC-E901",
                suggestions=["Install the missing tool and re-run this phase"],
                original_exception=exception,
                context=context
            )
        if isinstance(exception, OSError) and exception.errno == 13:
            return PermissionError(
                "Permission denied",
                code="MPC-E101",
                details=str(exception),
                suggestions=["Run the command with sudo"],
                original_exception=exception,
                context=context
            )
        if isinstance(exception, (ValueError, TypeError)):
            return ValidationError(
                str(exception) or "Invalid input or parameter",
                code="MPC-E801",
                original_exception=exception,
                context=context
            )
        return MinipcError(
            message=str(exception) or "An unknown error occurred",
            details=traceback.format_exc(),
            suggestions=["Check logs for more details"],
            original_exception=exception,
            context=context
        )

    def run_step(self, name: str, func: Callable, *args, hard_stop: bool = False, **kwargs):
        """
        Run one phase step under the error policy.

        MinipcError carries its own severity. Any other exception is a
        warning unless hard_stop is set. A hard stop raises PhaseAborted,
        a warning returns None so the phase continues.
        """
        try:
            return func(*args, **kwargs)
        except (UserCancelled, KeyboardInterrupt, EOFError, PhaseAborted):
            raise
        except Exception as e:
            error = e if isinstance(e, MinipcError) else self.convert_exception(e, {'step': name})
            if hard_stop and not error.is_hard_stop:
                error.error_info.severity = ErrorSeverity.ERROR
            elif not hard_stop and not isinstance(e, MinipcError):
                error.error_info.severity = ErrorSeverity.WARNING
            error.error_info.context.setdefault('step', name)
            self.handle_error(error)
            if error.is_hard_stop:
                raise PhaseAborted(name, error) from e
            print_warning(f"Step '{name}' did not complete; continuing.")
            return None

    def _log_error(self, error: MinipcError):
        log_message = f"[{error.code}] {error.severity.value.upper()}: {error}"
        if error.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message, exc_info=error.error_info.exception)
        elif error.severity == ErrorSeverity.ERROR:
            self.logger.error(log_message, exc_info=error.error_info.exception)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

    def _add_to_error_history(self, error_info: ErrorInfo):
        self.error_history.append(error_info)
        if len(self.error_history) > self.max_history_size:
            self.error_history.pop(0)

    def display_error(self, error: MinipcError):
        """Display error information to the user"""
        if error.severity == ErrorSeverity.INFO:
            print_info(f"{error}")
            for suggestion in error.suggestions:
                print_info(f"  • {suggestion}")
        elif error.severity == ErrorSeverity.WARNING:
            print_warning(f"{error}")
            if error.suggestions:
                console.print("[yellow]Manual steps:[/]")
                for suggestion in error.suggestions:
                    console.print(f"  • {suggestion}", markup=False)
        else:
            self._display_panel(error)

    def _display_panel(self, error: MinipcError):
        body = f"[bold red]Error {error.code}:[/] {_escape(str(error))}\n"
        if error.details:
            body += f"\n[dim]{_escape(error.details)}[/]"
        if error.suggestions:
            body += "\n\n[yellow]Suggested Solutions:[/]"
            for suggestion in error.suggestions:
                body += f"\n  • {_escape(suggestion)}"
        title = ("[white on red]CRITICAL ERROR[/]" if error.severity == ErrorSeverity.CRITICAL
                 else f"[red]{error.category.value.upper()} ERROR[/]")
        console.print(Panel(body, title=title, border_style="red"))

    def get_error_history(self, limit: int = None) -> List[ErrorInfo]:
        if limit:
            return self.error_history[-limit:]
        return self.error_history

    def display_error_history(self, limit: int = 10):
        """Display error history in a table"""
        history = self.get_error_history(limit)
        if not history:
            print_info("No errors in history")
            return

        table = Table(title=f"Error History (Last {min(limit, len(history))} Errors)")
        table.add_column("Time", style="cyan")
        table.add_column("Code", style="yellow")
        table.add_column("Severity", style="bold")
        table.add_column("Step", style="magenta")
        table.add_column("Message", style="white")
        for info in reversed(history):
            table.add_row(
                info.timestamp.strftime("%H:%M:%S"),
                info.code,
                info.severity.value.upper(),
                str(info.context.get('step', '-')),
                info.message
            )
        console.print(table)


def _escape(text: str) -> str:
    return text.replace("[", "\\[")


# Singleton instance for global access
_error_handler = None

def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance"""
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler

