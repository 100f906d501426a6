"""Manager-level pip configuration and per-call overrides."""

# pip_settings.py
from __future__ import annotations

import dataclasses as dc
import os
import shlex
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import ErrorKind, PipError
from ..pyutils.retry import RetryPolicy, random_jitter
from ..pyutils.waiting_config import DEFAULT_TIMEOUT_TICKS, WaitingConfig, WaitingConfigArg

__all__ = [
    "PipSettings",
    "CallOptions",
    "DEFAULT_CALL_OPTIONS",
    "BACKENDS",
    "DEFAULT_MAX_OUTPUT_BYTES",
]

BACKENDS = ("pip", "uv")

#: Per stream; older output is dropped and ``truncated`` is set.
DEFAULT_MAX_OUTPUT_BYTES = 4 * 1024 * 1024


def _dedupe(values: Iterable[str]) -> Tuple[str, ...]:
    seen = set()
    out: List[str] = []
    for v in values:
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return tuple(out)


def _split_urls(raw: Optional[str]) -> List[str]:
    return shlex.split(raw) if raw else []


def _env_float(env: Mapping[str, str], key: str) -> Optional[float]:
    raw = env.get(key)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise PipError.of(ErrorKind.INVALID_ARGUMENT, f"{key} must be a number, got {raw!r}", cause=e) from e


def _env_int(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = env.get(key)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise PipError.of(ErrorKind.INVALID_ARGUMENT, f"{key} must be an integer, got {raw!r}", cause=e) from e


@dc.dataclass(frozen=True)
class PipSettings:
    """
    Configuration shared by every operation of one manager.

    Precedence when a request is built: per-call :class:`CallOptions` >
    these settings > the process environment.
    """

    python_path: Optional[str] = None
    pip_path: Optional[str] = None
    backend: str = "pip"
    index_url: Optional[str] = None
    extra_index_urls: Tuple[str, ...] = ()
    trusted_hosts: Tuple[str, ...] = ()
    proxy: Optional[str] = None
    socket_timeout: Optional[float] = None
    timeout: float = DEFAULT_TIMEOUT_TICKS
    retries: int = 3
    retry_delay: float = 1.0
    retry_max_delay: float = 30.0
    cache_dir: Optional[str] = None
    environment: Mapping[str, str] = dc.field(default_factory=dict)
    extra_options: Mapping[str, Any] = dc.field(default_factory=dict)
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise PipError.of(
                ErrorKind.INVALID_ARGUMENT,
                f"backend must be one of {', '.join(BACKENDS)}, got {self.backend!r}",
            )
        if self.retries < 0:
            raise PipError.of(ErrorKind.INVALID_ARGUMENT, f"retries must be >= 0, got {self.retries}")
        if self.max_output_bytes <= 0:
            raise PipError.of(ErrorKind.INVALID_ARGUMENT, "max_output_bytes must be > 0")

        # ordered, de-duplicated tuples
        object.__setattr__(self, "extra_index_urls", _dedupe(self.extra_index_urls or ()))
        object.__setattr__(self, "trusted_hosts", _dedupe(self.trusted_hosts or ()))
        object.__setattr__(
            self,
            "timeout",
            WaitingConfig.check_arg(self.timeout).timeout,
        )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides: Any) -> "PipSettings":
        """
        Read settings from the environment.

        - ``PIP_INDEX_URL`` / ``PIP_EXTRA_INDEX_URL`` (shlex-split, order-preserving dedupe)
        - ``PIP_TRUSTED_HOST``
        - ``HTTPS_PROXY`` then ``HTTP_PROXY`` (either case)
        - ``PIPKIT_PYTHON``, ``PIPKIT_PIP``, ``PIPKIT_BACKEND``,
          ``PIPKIT_TIMEOUT``, ``PIPKIT_RETRIES``

        Keyword overrides win over the environment.
        """
        env = os.environ if env is None else env

        values: Dict[str, Any] = {}

        if env.get("PIP_INDEX_URL"):
            values["index_url"] = env["PIP_INDEX_URL"]

        extra = _split_urls(env.get("PIP_EXTRA_INDEX_URL"))
        if extra:
            values["extra_index_urls"] = _dedupe(extra)

        hosts = _split_urls(env.get("PIP_TRUSTED_HOST"))
        if hosts:
            values["trusted_hosts"] = _dedupe(hosts)

        for key in ("HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy"):
            if env.get(key):
                values["proxy"] = env[key]
                break

        if env.get("PIPKIT_PYTHON"):
            values["python_path"] = env["PIPKIT_PYTHON"]
        if env.get("PIPKIT_PIP"):
            values["pip_path"] = env["PIPKIT_PIP"]
        if env.get("PIPKIT_BACKEND"):
            values["backend"] = env["PIPKIT_BACKEND"].strip().lower()

        timeout = _env_float(env, "PIPKIT_TIMEOUT")
        if timeout is not None:
            values["timeout"] = timeout

        retries = _env_int(env, "PIPKIT_RETRIES")
        if retries is not None:
            values["retries"] = retries

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def retry_policy(self) -> RetryPolicy:
        """Backoff shape for retryable kinds; the attempt budget comes from each request."""
        return RetryPolicy(
            tries=self.retries + 1,
            delay=self.retry_delay,
            backoff=2.0,
            max_delay=self.retry_max_delay,
            exceptions=PipError,
            retryable=lambda e: getattr(e, "retryable", False),
            jitter=random_jitter(0.1),
        )


@dc.dataclass(frozen=True)
class CallOptions:
    """Per-call overrides; ``None`` means "use the manager setting"."""

    timeout: Optional[WaitingConfigArg] = None
    retries: Optional[int] = None
    index_url: Optional[str] = None
    extra_index_urls: Optional[Tuple[str, ...]] = None
    trusted_hosts: Optional[Tuple[str, ...]] = None
    proxy: Optional[str] = None
    socket_timeout: Optional[float] = None
    env: Mapping[str, str] = dc.field(default_factory=dict)
    cwd: Optional[str] = None
    cancel: Optional[threading.Event] = dc.field(default=None, compare=False, repr=False)

    def resolve_timeout(self, settings: PipSettings) -> float:
        if self.timeout is None:
            return settings.timeout
        if isinstance(self.timeout, (int, float)) and not isinstance(self.timeout, bool):
            if self.timeout < 0:
                raise PipError.of(ErrorKind.INVALID_ARGUMENT, f"timeout must be >= 0, got {self.timeout}")
        return WaitingConfig.check_arg(self.timeout).timeout

    def resolve_retries(self, settings: PipSettings) -> int:
        retries = settings.retries if self.retries is None else self.retries
        if retries < 0:
            raise PipError.of(ErrorKind.INVALID_ARGUMENT, f"retries must be >= 0, got {retries}")
        return int(retries)

    def merged(self, settings: PipSettings) -> Dict[str, Any]:
        """Network options after per-call > manager precedence."""
        return {
            "index_url": self.index_url if self.index_url is not None else settings.index_url,
            "extra_index_urls": _dedupe(
                self.extra_index_urls if self.extra_index_urls is not None else settings.extra_index_urls
            ),
            "trusted_hosts": _dedupe(
                self.trusted_hosts if self.trusted_hosts is not None else settings.trusted_hosts
            ),
            "proxy": self.proxy if self.proxy is not None else settings.proxy,
            "socket_timeout": self.socket_timeout if self.socket_timeout is not None else settings.socket_timeout,
        }


DEFAULT_CALL_OPTIONS = CallOptions()
