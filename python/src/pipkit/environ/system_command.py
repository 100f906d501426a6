from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import IO, Mapping, Optional, Sequence, Union

from ..errors import ErrorKind, PipError, classify
from ..pyutils.retry import RetryPolicy
from ..pyutils.waiting_config import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT_TICKS, WaitingConfig
from .pip_settings import DEFAULT_MAX_OUTPUT_BYTES

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "CommandExecutor",
    "DEFAULT_RETRY_POLICY",
]

logger = logging.getLogger(__name__)

#: Seconds between SIGTERM and SIGKILL when a process group is torn down.
TERMINATE_GRACE = 2.0
_READ_CHUNK = 64 * 1024


def _is_windows() -> bool:
    return os.name == "nt"


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, PipError) and error.retryable


DEFAULT_RETRY_POLICY = RetryPolicy(
    tries=1,
    delay=1.0,
    backoff=2.0,
    max_delay=30.0,
    exceptions=PipError,
    retryable=_is_retryable,
)


# ─────────────────────────────────────────────────────────────────────────────
# Request / result
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionRequest:
    """
    Fully built, immutable command invocation.

    ``env`` is an overlay on the process environment and ``env_unset`` names
    variables removed from the child.  ``timeout == 0`` disables the deadline.
    """

    args: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    env_unset: tuple[str, ...] = ()
    cwd: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT_TICKS
    retries: int = 0
    operation: str = ""

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        object.__setattr__(self, "env_unset", tuple(self.env_unset))

    @property
    def command_line(self) -> str:
        """Shell-quoted rendering, for messages only."""
        return shlex.join(self.args)

    def child_env(self, base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        for key in self.env_unset:
            env.pop(key, None)
        env.update(self.env)
        return env


@dataclass(frozen=True)
class ExecutionResult:
    args: tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    returncode: Optional[int] = None
    duration: float = 0.0
    pid: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.rstrip(), self.stderr.rstrip()) if part)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _TailBuffer:
    """Keeps the last ``limit`` bytes of a stream."""

    __slots__ = ("limit", "data", "truncated")

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        self.data += chunk
        overflow = len(self.data) - self.limit
        if overflow > 0:
            del self.data[:overflow]
            self.truncated = True

    def text(self) -> str:
        return bytes(self.data).decode("utf-8", errors="replace")


def _pump(stream: IO[bytes], sink: _TailBuffer) -> None:
    read = getattr(stream, "read1", stream.read)
    try:
        for chunk in iter(lambda: read(_READ_CHUNK), b""):
            sink.feed(chunk)
    except (OSError, ValueError):
        # pipe closed under us during teardown
        pass
    finally:
        stream.close()


def _start_reader(stream: IO[bytes], sink: _TailBuffer, name: str) -> threading.Thread:
    t = threading.Thread(target=_pump, args=(stream, sink), name=name, daemon=True)
    t.start()
    return t


def _popen_kwargs() -> dict:
    if _is_windows():
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def terminate_process_tree(popen: subprocess.Popen, grace: float = TERMINATE_GRACE) -> None:
    """
    Stop ``popen`` and everything it spawned.

    POSIX: SIGTERM to the process group, SIGKILL after ``grace`` seconds.
    Windows: ``taskkill /T /F``.
    """
    if popen.poll() is not None:
        return

    if _is_windows():
        subprocess.run(
            ["taskkill", "/T", "/F", "/PID", str(popen.pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
        if popen.poll() is None:
            popen.kill()
        popen.wait()
        return

    try:
        os.killpg(popen.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except PermissionError:
        popen.terminate()

    try:
        popen.wait(timeout=grace)
        return
    except subprocess.TimeoutExpired:
        logger.warning("terminate: pid=%s ignored SIGTERM, sending SIGKILL", popen.pid)

    try:
        os.killpg(popen.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        popen.kill()
    popen.wait()


# ─────────────────────────────────────────────────────────────────────────────
# CommandExecutor
# ─────────────────────────────────────────────────────────────────────────────

class CommandExecutor:
    """
    Runs :class:`ExecutionRequest` objects with deadline, cancellation and
    retry handling.

    The executor holds no per-call state, so one instance can serve many
    threads.  Subclasses may override :meth:`_run_once` to script results.
    """

    def __init__(
        self,
        retry: Optional[RetryPolicy] = None,
        *,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        terminate_grace: float = TERMINATE_GRACE,
    ) -> None:
        self.retry = retry or DEFAULT_RETRY_POLICY
        self.max_output_bytes = max_output_bytes
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace

    def __repr__(self) -> str:
        return f"{type(self).__name__}(retry={self.retry!r})"

    # ── lifecycle ─────────────────────────────────────────────────────────────

    def execute(
        self,
        request: ExecutionRequest,
        *,
        cancel: Optional[threading.Event] = None,
        raise_error: bool = True,
    ) -> Union[ExecutionResult, PipError]:
        """
        Run ``request`` until it succeeds or fails with a non-retryable kind.

        Transient kinds (``network_error``, ``timeout``) are retried up to
        ``request.retries`` times with the policy's backoff.  A set
        ``cancel`` event stops the running process and any pending backoff.
        """
        policy = self.retry.with_tries(request.retries + 1)
        label = request.operation or (request.args[0] if request.args else "command")

        def attempt(n: int) -> ExecutionResult:
            if cancel is not None and cancel.is_set():
                raise PipError.of(
                    ErrorKind.CANCELLED,
                    "operation cancelled",
                    command=request.command_line,
                    context={"operation": request.operation},
                )

            logger.info("execute: op=%s attempt=%s/%s cmd=%s", label, n, policy.tries, request.command_line)
            result = self._run_once(request, cancel)
            logger.debug(
                "execute: op=%s rc=%s duration=%.3fs timed_out=%s cancelled=%s truncated=%s",
                label,
                result.returncode,
                result.duration,
                result.timed_out,
                result.cancelled,
                result.truncated,
            )

            if result.success:
                return result
            raise classify(request, result)

        def backoff(seconds: float) -> None:
            if cancel is None:
                time.sleep(seconds)
            elif cancel.wait(seconds):
                raise PipError.of(
                    ErrorKind.CANCELLED,
                    "operation cancelled during retry backoff",
                    command=request.command_line,
                    context={"operation": request.operation},
                )

        try:
            return policy.run(attempt, sleep=backoff, logger=logger, name=label)
        except PipError as e:
            if raise_error:
                raise
            return e

    def _run_once(self, request: ExecutionRequest, cancel: Optional[threading.Event]) -> ExecutionResult:
        if not request.args:
            raise PipError.of(ErrorKind.INVALID_ARGUMENT, "empty command")

        logger.debug("run: argv=%s cwd=%s timeout=%s", list(request.args), request.cwd, request.timeout)
        waiting = WaitingConfig(timeout=max(0.0, float(request.timeout or 0.0)), interval=self.poll_interval)

        start = time.monotonic()
        try:
            popen = subprocess.Popen(
                list(request.args),
                cwd=request.cwd,
                env=request.child_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_popen_kwargs(),
            )
        except OSError as e:
            raise classify(request, cause=e) from e

        out_buf = _TailBuffer(self.max_output_bytes)
        err_buf = _TailBuffer(self.max_output_bytes)
        readers = [
            _start_reader(popen.stdout, out_buf, f"pipkit-stdout-{popen.pid}"),
            _start_reader(popen.stderr, err_buf, f"pipkit-stderr-{popen.pid}"),
        ]

        timed_out = False
        cancelled = False
        while True:
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            try:
                popen.wait(timeout=waiting.next_tick(start))
                break
            except subprocess.TimeoutExpired:
                pass
            if waiting.expired(start):
                timed_out = True
                break

        if timed_out or cancelled:
            logger.warning(
                "run: stopping pid=%s (%s) cmd=%s",
                popen.pid,
                "timeout" if timed_out else "cancelled",
                request.command_line,
            )
            terminate_process_tree(popen, grace=self.terminate_grace)

        for t in readers:
            t.join(timeout=self.terminate_grace)

        return ExecutionResult(
            args=request.args,
            stdout=out_buf.text(),
            stderr=err_buf.text(),
            returncode=popen.returncode,
            duration=time.monotonic() - start,
            pid=popen.pid,
            timed_out=timed_out,
            cancelled=cancelled,
            truncated=out_buf.truncated or err_buf.truncated,
        )

    # ── convenience ───────────────────────────────────────────────────────────

    def run(
        self,
        args: Sequence[str],
        *,
        operation: str = "",
        timeout: float = DEFAULT_TIMEOUT_TICKS,
        retries: int = 0,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        cancel: Optional[threading.Event] = None,
        raise_error: bool = True,
    ) -> Union[ExecutionResult, PipError]:
        request = ExecutionRequest(
            args=tuple(args),
            env=dict(env or {}),
            cwd=cwd,
            timeout=timeout,
            retries=retries,
            operation=operation,
        )
        return self.execute(request, cancel=cancel, raise_error=raise_error)
