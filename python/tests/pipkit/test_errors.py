# test_errors.py
from __future__ import annotations

import logging

import pytest

from pipkit.environ.system_command import ExecutionRequest, ExecutionResult
from pipkit.errors import (
    CLASSIFICATION_RULES,
    KIND_SUGGESTIONS,
    ErrorKind,
    PipError,
    classify,
    log_pip_error,
)


def _request(*args, operation="install", timeout=60.0) -> ExecutionRequest:
    return ExecutionRequest(args=args or ("pip", "install", "x"), operation=operation, timeout=timeout)


def _result(stderr="", stdout="", returncode=1, **kwargs) -> ExecutionResult:
    return ExecutionResult(args=("pip",), stdout=stdout, stderr=stderr, returncode=returncode, pid=123, **kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# ErrorKind / PipError
# ─────────────────────────────────────────────────────────────────────────────

def test_every_kind_has_suggestions():
    assert set(KIND_SUGGESTIONS) == set(ErrorKind)


def test_retryable_kinds():
    assert {k for k in ErrorKind if k.retryable} == {ErrorKind.NETWORK_ERROR, ErrorKind.TIMEOUT}


def test_kind_str_is_value():
    assert str(ErrorKind.VENV_NOT_FOUND) == "venv_not_found"


def test_of_fills_default_suggestions():
    err = PipError.of(ErrorKind.PERMISSION_DENIED, "denied")
    assert err.suggestions == KIND_SUGGESTIONS[ErrorKind.PERMISSION_DENIED]
    assert PipError.of(ErrorKind.PERMISSION_DENIED, "denied", suggestions=()).suggestions == ()


def test_str_rendering():
    err = PipError.of(
        ErrorKind.PACKAGE_NOT_FOUND,
        "package not found: nosuchpkg",
        command="pip install nosuchpkg",
        exit_code=1,
        output="ERROR: No matching distribution found for nosuchpkg",
        suggestions=("Check the spelling", "Search PyPI"),
    )
    assert str(err) == (
        "[package_not_found] package not found: nosuchpkg"
        " | Command: pip install nosuchpkg"
        " | Exit Code: 1"
        " | Output: ERROR: No matching distribution found for nosuchpkg"
        " | Suggestions: Check the spelling, Search PyPI"
    )


def test_str_omits_long_output_and_zero_exit_code():
    err = PipError.of(ErrorKind.COMMAND_FAILED, "boom", exit_code=0, output="x" * 500, suggestions=())
    assert str(err) == "[command_failed] boom"
    assert err.output == "x" * 500


def test_is_kind_and_unwrap():
    cause = OSError("disk")
    err = PipError.wrap(cause)
    assert err.is_kind(ErrorKind.COMMAND_FAILED, ErrorKind.TIMEOUT)
    assert not err.is_kind(ErrorKind.TIMEOUT)
    assert err.unwrap() is cause
    assert PipError.wrap(err) is err


def test_with_context_copies():
    err = PipError.of(ErrorKind.TIMEOUT, "slow", context={"operation": "install"})
    other = err.with_context(attempt=2)
    assert other.context == {"operation": "install", "attempt": "2"}
    assert err.context == {"operation": "install"}


def test_pip_error_is_raisable():
    with pytest.raises(RuntimeError, match="boom"):
        raise PipError.of(ErrorKind.COMMAND_FAILED, "boom")


# ─────────────────────────────────────────────────────────────────────────────
# classify
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "stderr, kind",
    [
        ("ERROR: XMLRPC request failed [code: -32500]", ErrorKind.FEATURE_DISABLED),
        ("OSError: [Errno 28] No space left on device", ErrorKind.INSUFFICIENT_SPACE),
        ("ERROR: Could not install packages due to an OSError: [Errno 13] Permission denied: '/usr/lib'", ErrorKind.PERMISSION_DENIED),
        ("error: externally-managed-environment", ErrorKind.PERMISSION_DENIED),
        ("/usr/bin/python3: No module named pip", ErrorKind.PIP_NOT_FOUND),
        ("/venv/bin/pip: bad interpreter: No such file or directory", ErrorKind.VENV_CORRUPTED),
        ("ERROR: ResolutionImpossible: for help visit https://pip.pypa.io", ErrorKind.VERSION_CONFLICT),
        ("  × No solution found when resolving dependencies:", ErrorKind.VERSION_CONFLICT),
        ("WARNING: Retrying after connection broken by 'NewConnectionError'", ErrorKind.NETWORK_ERROR),
        ("ERROR: No matching distribution found for nosuchpkg", ErrorKind.PACKAGE_NOT_FOUND),
        ("  ╰─▶ Because nosuchpkg was not found in the package registry and you require nosuchpkg, we can conclude that your requirements are unsatisfiable.", ErrorKind.PACKAGE_NOT_FOUND),
        ("ERROR: Invalid requirement: 'requests>>1'", ErrorKind.INVALID_ARGUMENT),
        ("no such option: --bogus", ErrorKind.INVALID_ARGUMENT),
        ("something nobody has seen before", ErrorKind.COMMAND_FAILED),
    ],
)
def test_classify_rules(stderr, kind):
    assert classify(_request(), _result(stderr)).kind is kind


def test_classify_is_deterministic():
    request, result = _request(), _result("ERROR: No matching distribution found for nosuchpkg")
    a, b = classify(request, result), classify(request, result)
    assert (a.kind, a.message, a.command, a.exit_code, a.output, a.suggestions, dict(a.context)) == (
        b.kind, b.message, b.command, b.exit_code, b.output, b.suggestions, dict(b.context),
    )


def test_classify_message_quotes_matched_line():
    err = classify(_request(), _result("Collecting x\nERROR: No matching distribution found for x\n"))
    assert err.message == "package not found: ERROR: No matching distribution found for x"


def test_classify_reads_stdout_too():
    err = classify(_request(), _result(stdout="ERROR: No matching distribution found for x"))
    assert err.kind is ErrorKind.PACKAGE_NOT_FOUND


def test_most_specific_rule_wins():
    stderr = (
        "ERROR: Could not install packages due to an OSError: [Errno 28] No space left on device\n"
        "Could not fetch URL https://pypi.org/simple/x/\n"
    )
    assert classify(_request(), _result(stderr)).kind is ErrorKind.INSUFFICIENT_SPACE


def test_already_exists_only_for_venv_create():
    stderr = "Error: [Errno 17] File exists: '/tmp/venv'"
    assert classify(_request(operation="venv-create"), _result(stderr)).kind is ErrorKind.VENV_ALREADY_EXISTS
    assert classify(_request(operation="install"), _result(stderr)).kind is ErrorKind.COMMAND_FAILED


def test_classify_flags_before_rules():
    timed_out = _result("Could not fetch URL", timed_out=True)
    err = classify(_request(timeout=0.5), timed_out)
    assert err.kind is ErrorKind.TIMEOUT
    assert err.message == "command timed out after 0.5s"

    cancelled = _result("", cancelled=True, timed_out=True)
    assert classify(_request(), cancelled).kind is ErrorKind.CANCELLED


def test_classify_context():
    err = classify(_request(operation="show"), _result("boom", duration=1.23456, truncated=True))
    assert err.context == {"operation": "show", "duration": "1.235", "pid": "123", "truncated": "true"}
    assert err.exit_code == 1
    assert err.command == "pip install x"


@pytest.mark.parametrize(
    "exe, kind",
    [
        ("/opt/bin/pip3", ErrorKind.PIP_NOT_FOUND),
        ("uv", ErrorKind.PIP_NOT_FOUND),
        ("/usr/bin/python3.12", ErrorKind.INTERPRETER_NOT_FOUND),
    ],
)
def test_classify_launch_failure(exe, kind):
    cause = FileNotFoundError(2, "No such file or directory", exe)
    err = classify(_request(exe, "--version"), cause=cause)
    assert err.kind is kind
    assert err.cause is cause
    assert exe in err.message


def test_classify_other_os_errors():
    assert classify(_request(), cause=PermissionError(13, "nope")).kind is ErrorKind.PERMISSION_DENIED
    assert classify(_request(), cause=OSError(8, "Exec format error")).kind is ErrorKind.COMMAND_FAILED


def test_classify_passes_pip_errors_through():
    err = PipError.of(ErrorKind.CANCELLED, "stop")
    assert classify(_request(), cause=err) is err


def test_rules_are_ordered_most_specific_first():
    kinds = [r.kind for r in CLASSIFICATION_RULES]
    assert kinds.index(ErrorKind.INSUFFICIENT_SPACE) < kinds.index(ErrorKind.NETWORK_ERROR)
    assert kinds.index(ErrorKind.VENV_CORRUPTED) < kinds.index(ErrorKind.VERSION_CONFLICT)
    assert kinds[-1] is ErrorKind.INVALID_ARGUMENT


# ─────────────────────────────────────────────────────────────────────────────
# log_pip_error
# ─────────────────────────────────────────────────────────────────────────────

def test_log_levels(caplog):
    log = logging.getLogger("pipkit.tests")
    with caplog.at_level(logging.DEBUG, logger="pipkit.tests"):
        log_pip_error(PipError.of(ErrorKind.NETWORK_ERROR, "offline"), "install", log)
        log_pip_error(PipError.of(ErrorKind.PIP_NOT_FOUND, "no pip", command="pip --version"), "version", log)

    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert (logging.WARNING, "install: offline") in levels
    assert (logging.ERROR, "System dependency missing in version: no pip") in levels
    assert (logging.DEBUG, "Failed command: pip --version") in levels
    assert any(lvl == logging.INFO and msg.startswith("Suggestions: ") for lvl, msg in levels)
