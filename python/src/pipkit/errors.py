"""
errors.py: error taxonomy and failure classification.

Every failure that reaches a caller is a :class:`PipError`.  Validation
problems are raised directly by the command builder; subprocess failures go
through :func:`classify`, which matches exit code and output against an
ordered rule table (most specific first) and attaches fixed remediation
suggestions.

Classification is a pure function of ``(request, result, cause)``: running
it twice on the same inputs yields equal records.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import PurePath
from typing import TYPE_CHECKING, Any, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from .environ.system_command import ExecutionRequest, ExecutionResult

__all__ = [
    "ErrorKind",
    "PipError",
    "ClassificationRule",
    "CLASSIFICATION_RULES",
    "KIND_SUGGESTIONS",
    "classify",
    "log_pip_error",
]

logger = logging.getLogger(__name__)

#: Short output is inlined into ``str(PipError)``; longer output stays on the record.
_INLINE_OUTPUT_LIMIT = 200


class ErrorKind(str, Enum):
    INTERPRETER_NOT_FOUND = "interpreter_not_found"
    PIP_NOT_FOUND = "pip_not_found"
    INVALID_ARGUMENT = "invalid_argument"
    PACKAGE_NOT_FOUND = "package_not_found"
    VERSION_CONFLICT = "version_conflict"
    PERMISSION_DENIED = "permission_denied"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    COMMAND_FAILED = "command_failed"
    VENV_ALREADY_EXISTS = "venv_already_exists"
    VENV_NOT_FOUND = "venv_not_found"
    VENV_CORRUPTED = "venv_corrupted"
    INSUFFICIENT_SPACE = "insufficient_space"
    FEATURE_DISABLED = "feature_disabled"

    @property
    def retryable(self) -> bool:
        """Transient kinds the executor may re-run transparently."""
        return self in _RETRYABLE_KINDS

    def __str__(self) -> str:
        return self.value


_RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK_ERROR, ErrorKind.TIMEOUT})


KIND_SUGGESTIONS: dict[ErrorKind, tuple[str, ...]] = {
    ErrorKind.INTERPRETER_NOT_FOUND: (
        "Install Python from https://python.org or your system package manager",
        "Pass an explicit interpreter with --python",
    ),
    ErrorKind.PIP_NOT_FOUND: (
        "Install pip using: python -m ensurepip --upgrade",
        "Pass an explicit pip executable with --pip",
    ),
    ErrorKind.INVALID_ARGUMENT: (
        "Check the package name and version constraint syntax",
        "See https://pip.pypa.io/en/stable/reference/requirement-specifiers/",
    ),
    ErrorKind.PACKAGE_NOT_FOUND: (
        "Check the package name spelling",
        "Search for the package on https://pypi.org",
        "Check that the requested version supports your Python version",
    ),
    ErrorKind.VERSION_CONFLICT: (
        "Loosen the version constraints of the conflicting packages",
        "Install into a fresh virtual environment",
    ),
    ErrorKind.PERMISSION_DENIED: (
        "Use a virtual environment",
        "Install for the current user only with --user",
        "Run with elevated privileges (sudo on Unix, Administrator on Windows)",
    ),
    ErrorKind.NETWORK_ERROR: (
        "Check your internet connection",
        "Try a different package index with --index-url",
        "Configure a proxy if you are behind a corporate firewall",
    ),
    ErrorKind.TIMEOUT: (
        "Increase the timeout with --timeout",
        "Try again later; the index may be temporarily unavailable",
    ),
    ErrorKind.CANCELLED: (
        "Re-run the operation; partial changes may need to be cleaned up",
    ),
    ErrorKind.COMMAND_FAILED: (
        "Inspect the command output for details",
        "Re-run with --verbose for more information",
    ),
    ErrorKind.VENV_ALREADY_EXISTS: (
        "Use a different path",
        "Remove the existing environment or recreate it with force",
    ),
    ErrorKind.VENV_NOT_FOUND: (
        "Create the virtual environment first",
        "Check the virtual environment path",
    ),
    ErrorKind.VENV_CORRUPTED: (
        "Recreate the virtual environment",
        "Check that the base interpreter of the environment still exists",
    ),
    ErrorKind.INSUFFICIENT_SPACE: (
        "Free up disk space",
        "Clean the pip cache: pip cache purge",
    ),
    ErrorKind.FEATURE_DISABLED: (
        "Search for packages on https://pypi.org instead",
    ),
}


# ─────────────────────────────────────────────────────────────────────────────
# PipError
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(eq=False)
class PipError(RuntimeError):
    """Classified failure of a pip / python operation."""

    kind: ErrorKind
    message: str
    command: str = ""
    exit_code: Optional[int] = None
    output: str = ""
    suggestions: tuple[str, ...] = ()
    cause: Optional[BaseException] = None
    context: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def of(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        suggestions: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ) -> "PipError":
        """Build an error with the kind's default suggestions."""
        if suggestions is None:
            suggestions = KIND_SUGGESTIONS.get(kind, ())
        return cls(kind=kind, message=message, suggestions=tuple(suggestions), **kwargs)

    @classmethod
    def wrap(cls, error: BaseException, kind: ErrorKind = ErrorKind.COMMAND_FAILED, message: str | None = None) -> "PipError":
        if isinstance(error, PipError):
            return error
        return cls.of(kind, message or str(error) or type(error).__name__, cause=error)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def is_kind(self, *kinds: ErrorKind) -> bool:
        return self.kind in kinds

    def unwrap(self) -> Optional[BaseException]:
        return self.cause

    def with_context(self, **values: Any) -> "PipError":
        merged = dict(self.context)
        merged.update({k: str(v) for k, v in values.items()})
        return replace(self, context=merged)

    def __str__(self) -> str:
        parts = [f"[{self.kind.value}] {self.message}"]

        if self.command:
            parts.append(f"Command: {self.command}")

        if self.exit_code:
            parts.append(f"Exit Code: {self.exit_code}")

        output = self.output.strip()
        if output and len(output) < _INLINE_OUTPUT_LIMIT:
            parts.append(f"Output: {output}")

        if self.suggestions:
            parts.append(f"Suggestions: {', '.join(self.suggestions)}")

        return " | ".join(parts)

    def __repr__(self) -> str:
        return f"PipError(kind={self.kind.value!r}, message={self.message!r})"


# ─────────────────────────────────────────────────────────────────────────────
# Rules
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ClassificationRule:
    kind: ErrorKind
    pattern: re.Pattern
    message: str
    exit_codes: Optional[frozenset[int]] = None
    operations: Optional[frozenset[str]] = None

    @property
    def suggestions(self) -> tuple[str, ...]:
        return KIND_SUGGESTIONS.get(self.kind, ())

    def match(self, text: str, exit_code: Optional[int], operation: str) -> Optional[re.Match]:
        if self.operations is not None and operation not in self.operations:
            return None
        if self.exit_codes is not None and exit_code not in self.exit_codes:
            return None
        return self.pattern.search(text)


def _rule(kind: ErrorKind, message: str, *patterns: str, exit_codes=None, operations=None) -> ClassificationRule:
    return ClassificationRule(
        kind=kind,
        pattern=re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE | re.MULTILINE),
        message=message,
        exit_codes=frozenset(exit_codes) if exit_codes is not None else None,
        operations=frozenset(operations) if operations is not None else None,
    )


#: Ordered, most specific first.  The first match wins.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    _rule(
        ErrorKind.FEATURE_DISABLED,
        "pip search is disabled on this index",
        r"XMLRPC request failed",
        r"XMLRPC API is currently disabled",
        r"pip search.{0,40}(?:not supported|disabled|no longer)",
    ),
    _rule(
        ErrorKind.INSUFFICIENT_SPACE,
        "not enough disk space",
        r"No space left on device",
        r"\[Errno 28\]",
        r"not enough (?:disk )?space",
        r"Disk quota exceeded",
    ),
    _rule(
        ErrorKind.PERMISSION_DENIED,
        "permission denied",
        r"\[Errno 13\]",
        r"Permission denied",
        r"Access is denied",
        r"\[WinError 5\]",
        r"externally-managed-environment",
    ),
    _rule(
        ErrorKind.PIP_NOT_FOUND,
        "pip is not installed for this interpreter",
        r"No module named ['\"]?pip['\"]?\s*$",
        r"No module named pip\b",
    ),
    _rule(
        ErrorKind.VENV_ALREADY_EXISTS,
        "virtual environment already exists",
        r"\[Errno 17\] File exists",
        r"already exists",
        operations={"venv-create"},
    ),
    _rule(
        ErrorKind.VENV_CORRUPTED,
        "virtual environment is corrupted",
        r"bad interpreter",
        r"Fatal Python error",
        r"Could not find platform (?:in)?dependent libraries",
        r"No Python at ['\"]",
        r"failed to locate pyvenv\.cfg",
    ),
    # uv reports a missing package as an unsatisfiable resolution
    _rule(
        ErrorKind.PACKAGE_NOT_FOUND,
        "package not found",
        r"was not found in the package registry",
    ),
    _rule(
        ErrorKind.VERSION_CONFLICT,
        "conflicting package versions",
        r"ResolutionImpossible",
        r"conflicting dependencies",
        r"dependency conflicts?",
        r"has requirement .+, but you have",
        r"No solution found when resolving dependencies",
    ),
    _rule(
        ErrorKind.NETWORK_ERROR,
        "network error",
        r"Could not fetch URL",
        r"NewConnectionError",
        r"Max retries exceeded",
        r"Temporary failure in name resolution",
        r"Name or service not known",
        r"nodename nor servname",
        r"Network is unreachable",
        r"Connection (?:refused|reset|aborted)",
        r"ConnectionError",
        r"ProxyError",
        r"SSLError",
        r"ReadTimeoutError",
        r"Read timed out",
        r"Failed to (?:fetch|download)",
        r"urlopen error",
    ),
    _rule(
        ErrorKind.PACKAGE_NOT_FOUND,
        "package not found",
        r"No matching distribution found",
        r"Could not find a version that satisfies",
        r"Package\(s\) not found",
        r"No such package",
    ),
    _rule(
        ErrorKind.INVALID_ARGUMENT,
        "invalid command arguments",
        r"Invalid requirement",
        r"InvalidRequirement",
        r"no such option",
        r"unrecognized arguments",
        r"requires an argument",
        r"is not a valid editable requirement",
        r"Invalid version",
        exit_codes=None,
    ),
)


def _matched_line(text: str, match: re.Match) -> str:
    start = text.rfind("\n", 0, match.start()) + 1
    end = text.find("\n", match.end())
    line = text[start:] if end < 0 else text[start:end]
    return line.strip()


def _executable_kind(args: Sequence[str]) -> ErrorKind:
    if not args:
        return ErrorKind.INTERPRETER_NOT_FOUND
    name = PurePath(str(args[0])).name.lower()
    if name.startswith("pip") or name.startswith("uv"):
        return ErrorKind.PIP_NOT_FOUND
    return ErrorKind.INTERPRETER_NOT_FOUND


def classify(
    request: Optional["ExecutionRequest"],
    result: Optional["ExecutionResult"] = None,
    cause: Optional[BaseException] = None,
) -> PipError:
    """
    Turn a failed execution into a :class:`PipError`.

    Order: launch failures (``cause``), then cancellation and timeout flags,
    then output rules, then the ``command_failed`` catch-all.
    """
    command = request.command_line if request is not None else ""
    operation = request.operation if request is not None else ""
    args = request.args if request is not None else ()
    exit_code = result.returncode if result is not None else None

    stderr = (result.stderr if result is not None else "") or ""
    stdout = (result.stdout if result is not None else "") or ""
    output = "\n".join(part for part in (stderr.rstrip(), stdout.rstrip()) if part)

    context = {"operation": operation}
    if result is not None:
        context["duration"] = f"{result.duration:.3f}"
        if result.pid is not None:
            context["pid"] = str(result.pid)
        if result.truncated:
            context["truncated"] = "true"

    base = dict(command=command, exit_code=exit_code, output=output, cause=cause, context=context)

    if isinstance(cause, PipError):
        return cause

    if isinstance(cause, FileNotFoundError):
        kind = _executable_kind(args)
        exe = args[0] if args else "<empty command>"
        return PipError.of(kind, f"executable not found: {exe}", **base)

    if isinstance(cause, PermissionError):
        exe = args[0] if args else "<empty command>"
        return PipError.of(ErrorKind.PERMISSION_DENIED, f"cannot execute {exe}: {cause}", **base)

    if isinstance(cause, OSError):
        return PipError.of(ErrorKind.COMMAND_FAILED, f"failed to start command: {cause}", **base)

    if result is not None and result.cancelled:
        return PipError.of(ErrorKind.CANCELLED, "operation cancelled", **base)

    if result is not None and result.timed_out:
        timeout = request.timeout if request is not None else None
        message = f"command timed out after {timeout:g}s" if timeout else "command timed out"
        return PipError.of(ErrorKind.TIMEOUT, message, **base)

    for rule in CLASSIFICATION_RULES:
        m = rule.match(output, exit_code, operation)
        if m:
            detail = _matched_line(output, m)
            message = f"{rule.message}: {detail}" if detail else rule.message
            return PipError.of(rule.kind, message, suggestions=rule.suggestions, **base)

    if exit_code is None:
        message = "command failed"
    else:
        message = f"command failed with exit code {exit_code}"
    return PipError.of(ErrorKind.COMMAND_FAILED, message, **base)


def log_pip_error(error: PipError, context: str, log: Optional[logging.Logger] = None) -> None:
    """Log an error at a level that matches its kind, then its details."""
    log = log or logger

    if error.kind in (ErrorKind.NETWORK_ERROR, ErrorKind.TIMEOUT, ErrorKind.CANCELLED):
        log.warning("%s: %s", context, error.message)
    elif error.kind in (ErrorKind.INTERPRETER_NOT_FOUND, ErrorKind.PIP_NOT_FOUND):
        log.error("System dependency missing in %s: %s", context, error.message)
    else:
        log.error("%s: %s", context, error.message)

    if error.suggestions:
        log.info("Suggestions: %s", "; ".join(error.suggestions))
    if error.command:
        log.debug("Failed command: %s", error.command)
    if error.output:
        log.debug("Command output: %s", error.output)
