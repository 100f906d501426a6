import os
import stat
import sys
from pathlib import Path
from typing import Callable, List, Optional, Union

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_ROOT = PROJECT_ROOT / "python" / "src"

if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))


from pipkit.environ.system_command import CommandExecutor, ExecutionRequest, ExecutionResult  # noqa: E402
from pipkit.errors import PipError  # noqa: E402
from pipkit.pyutils.retry import RetryPolicy  # noqa: E402


def _executable(path: Path, body: str = "#!/bin/sh\nexit 0\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# ─────────────────────────────────────────────────────────────────────────────
# Fake layouts
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_venv() -> Callable[..., Path]:
    """
    Build a directory that looks like a venv without running ``python -m venv``.

    Nothing inside is ever executed: tests that need a command result use
    :class:`ScriptedExecutor`.
    """

    def _make(
        root: Path,
        *,
        version: Optional[str] = "3.12.1",
        python: bool = True,
        pip: bool = True,
        cfg: bool = True,
        extra_cfg: str = "",
    ) -> Path:
        root.mkdir(parents=True, exist_ok=True)
        if python:
            _executable(root / "bin" / "python")
        if pip:
            _executable(root / "bin" / "pip")
        if cfg:
            lines = ["home = /usr/bin", "include-system-site-packages = false"]
            if version:
                lines.append(f"version = {version}")
            text = "\n".join(lines) + "\n" + extra_cfg
            (root / "pyvenv.cfg").write_text(text, encoding="utf-8")
        return root

    return _make


@pytest.fixture
def fake_bin(tmp_path) -> Path:
    """A ``PATH`` directory holding ``python3`` and ``pip3`` stand-ins."""
    bin_dir = tmp_path / "fake-bin"
    _executable(bin_dir / "python3")
    _executable(bin_dir / "pip3")
    return bin_dir


# ─────────────────────────────────────────────────────────────────────────────
# Scripted executor
# ─────────────────────────────────────────────────────────────────────────────

Script = Union[ExecutionResult, Callable[[ExecutionRequest], ExecutionResult]]


class ScriptedExecutor(CommandExecutor):
    """
    CommandExecutor whose attempts return canned results instead of spawning.

    Each attempt consumes the next scripted entry; the last entry repeats.
    Retry, classification and cancellation still run through the real
    :meth:`CommandExecutor.execute`.
    """

    def __init__(self, *script: Script, retry: Optional[RetryPolicy] = None) -> None:
        super().__init__(retry or RetryPolicy(tries=1, delay=0.0, exceptions=PipError, retryable=lambda e: e.retryable))
        self.script: List[Script] = list(script)
        self.requests: List[ExecutionRequest] = []

    def _run_once(self, request, cancel):
        self.requests.append(request)
        if not self.script:
            entry: Script = ExecutionResult(args=request.args, returncode=0)
        elif len(self.script) > 1:
            entry = self.script.pop(0)
        else:
            entry = self.script[0]

        if callable(entry):
            return entry(request)
        return ExecutionResult(
            args=request.args,
            stdout=entry.stdout,
            stderr=entry.stderr,
            returncode=entry.returncode,
            duration=entry.duration,
            pid=entry.pid,
            timed_out=entry.timed_out,
            cancelled=entry.cancelled,
            truncated=entry.truncated,
        )

    @property
    def last(self) -> ExecutionRequest:
        return self.requests[-1]


def ok(stdout: str = "", stderr: str = "") -> ExecutionResult:
    return ExecutionResult(args=(), stdout=stdout, stderr=stderr, returncode=0)


def failed(stderr: str, returncode: int = 1, stdout: str = "") -> ExecutionResult:
    return ExecutionResult(args=(), stdout=stdout, stderr=stderr, returncode=returncode)


@pytest.fixture
def scripted():
    """``scripted(*results)`` -> :class:`ScriptedExecutor`."""
    return ScriptedExecutor


@pytest.fixture
def results():
    """Builders for scripted results: ``results.ok(...)``, ``results.failed(...)``."""

    class _Results:
        pass

    _Results.ok = staticmethod(ok)
    _Results.failed = staticmethod(failed)
    return _Results


@pytest.fixture
def clean_env(monkeypatch):
    """Drop pipkit / pip variables from the process environment."""
    for key in list(os.environ):
        if key.startswith(("PIPKIT_", "PIP_", "UV_")) or key.lower() in ("http_proxy", "https_proxy"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
