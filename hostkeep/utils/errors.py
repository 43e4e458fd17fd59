"""Error handling utilities for hostkeep."""

import sys
import traceback
from typing import List, Optional

import click


class HostKeepError(Exception):
    """Base exception for hostkeep errors."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        suggestions: Optional[list] = None,
    ):
        self.message = message
        self.details = details
        self.suggestions = suggestions or []
        super().__init__(message)


class ConfigurationError(HostKeepError):
    """Raised before any step runs when the host or configuration is unusable."""

    pass


class CollaboratorError(HostKeepError):
    """Raised when an external tool or library call fails."""

    def __init__(self, message: str, command: Optional[List[str]] = None, **kwargs):
        self.command = command
        super().__init__(message, **kwargs)


class StepExecutionError(HostKeepError):
    """Raised when a step's collaborator call fails."""

    def __init__(self, step_id: str, cause: Exception, **kwargs):
        self.step_id = step_id
        self.cause = cause
        super().__init__(f"Step '{step_id}' failed: {cause}", **kwargs)


class VerificationError(HostKeepError):
    """Raised by integrity checks; reported as a warning, never fatal."""

    pass


class OrchestrationError(HostKeepError):
    """Raised when a job cannot continue after a step failure."""

    def __init__(
        self,
        message: str,
        job_path: Optional[str] = None,
        error_log: Optional[str] = None,
        failed_steps: Optional[List[str]] = None,
        **kwargs,
    ):
        self.job_path = job_path
        self.error_log = error_log
        self.failed_steps = failed_steps or []
        super().__init__(message, **kwargs)


class JobInterrupted(HostKeepError):
    """Raised when the operator interrupts a running job."""

    def __init__(self, message: str, job_path: Optional[str] = None, step_id: Optional[str] = None, **kwargs):
        self.job_path = job_path
        self.step_id = step_id
        super().__init__(message, **kwargs)


class ErrorHandler:
    """Handles and formats errors for user-friendly display."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def handle_error(self, error: Exception, context: Optional[str] = None) -> None:
        """
        Handle and display error with appropriate formatting.

        Args:
            error: Exception to handle
            context: Optional context about when/where error occurred
        """
        if isinstance(error, HostKeepError):
            self._handle_hostkeep_error(error, context)
        else:
            self._handle_generic_error(error, context)

    def _handle_hostkeep_error(self, error: HostKeepError, context: Optional[str]) -> None:
        """Handle hostkeep-specific errors."""
        click.echo(f"✗ {error.message}", err=True)

        if context:
            click.echo(f"Context: {context}", err=True)

        if error.details:
            click.echo(f"Details: {error.details}", err=True)

        # Resumption pointers for failed or interrupted jobs
        job_path = getattr(error, "job_path", None)
        error_log = getattr(error, "error_log", None)
        if error_log:
            click.echo(f"Error log: {error_log}", err=True)
        if job_path:
            click.echo(f"Job directory (re-run to resume): {job_path}", err=True)

        if error.suggestions:
            click.echo("\nSuggestions:", err=True)
            for suggestion in error.suggestions:
                click.echo(f"  • {suggestion}", err=True)

        if self.verbose:
            click.echo("\nFull traceback:", err=True)
            traceback.print_exc()

    def _handle_generic_error(self, error: Exception, context: Optional[str]) -> None:
        """Handle generic Python exceptions."""
        error_type = type(error).__name__

        if isinstance(error, FileNotFoundError):
            message = f"File not found: {error}"
            suggestions = [
                "Check that the file path is correct",
                "Ensure the file exists and is readable",
            ]
        elif isinstance(error, PermissionError):
            message = f"Permission denied: {error}"
            suggestions = [
                "Check file/directory permissions",
                "Try running with appropriate privileges",
            ]
        else:
            message = f"{error_type}: {error}"
            suggestions = []

        click.echo(f"✗ {message}", err=True)

        if context:
            click.echo(f"Context: {context}", err=True)

        if suggestions:
            click.echo("\nSuggestions:", err=True)
            for suggestion in suggestions:
                click.echo(f"  • {suggestion}", err=True)

        if self.verbose:
            click.echo("\nFull traceback:", err=True)
            traceback.print_exc()

    def exit_with_error(self, error: Exception, context: Optional[str] = None, exit_code: int = 1) -> None:
        """Handle error and exit with specified code."""
        self.handle_error(error, context)
        sys.exit(exit_code)


def create_error_suggestions(error_type: str, **kwargs) -> list:
    """
    Create contextual error suggestions based on error type and context.

    Args:
        error_type: Type of error
        **kwargs: Additional context information

    Returns:
        list: List of suggestion strings
    """
    tools = ", ".join(kwargs.get("tools", [])) or "the missing tools"
    suggestions = {
        "tool_missing": [
            f"Install {tools} with your package manager",
            "Re-run and accept the offer to install missing tools",
        ],
        "job_locked": [
            "Another hostkeep process is using this job directory",
            "Wait for it to finish or stop it before resuming",
        ],
        "insufficient_space": [
            "Free up space on the backup filesystem",
            "Lower min_free_space_gb in hostkeep.yml if the estimate is too high",
        ],
        "decrypt_failed": [
            "Check the passphrase (see <job>.passphrase if it was saved)",
            "Verify the encrypted archive was copied completely",
        ],
        "step_failed": [
            "Inspect the error log in the job directory",
            "Re-run the same command to resume from the failed step",
        ],
        "configuration_invalid": [
            "Check YAML syntax in hostkeep.yml",
            "Run 'hostkeep config show' to see the effective configuration",
        ],
    }

    return suggestions.get(error_type, [])


def format_validation_errors(errors: list) -> str:
    """
    Format validation errors for display.

    Args:
        errors: List of validation error messages

    Returns:
        str: Formatted error message
    """
    if not errors:
        return "No validation errors"

    if len(errors) == 1:
        return f"Validation error: {errors[0]}"

    formatted = "Validation errors:\n"
    for i, error in enumerate(errors, 1):
        formatted += f"  {i}. {error}\n"

    return formatted.strip()
