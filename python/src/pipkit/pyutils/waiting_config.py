import datetime as dt
import time
from dataclasses import dataclass
from typing import Optional, Union

__all__ = ["WaitingConfig", "WaitingConfigArg", "DEFAULT_WAITING_CONFIG"]


DEFAULT_TIMEOUT_TICKS = float(20 * 60) # 20 minutes
DEFAULT_POLL_INTERVAL = 0.05
WaitingConfigArg = Union["WaitingConfig", dict, int, float, dt.timedelta, dt.datetime, bool]


def _seconds(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, dt.timedelta):
        return float(value.total_seconds())
    if isinstance(value, (int, float)):
        return float(value)
    raise TypeError(f"Expected seconds as int/float/timedelta, got {type(value)!r}")


def _until(deadline: dt.datetime) -> float:
    if not isinstance(deadline, dt.datetime):
        raise TypeError(f"deadline must be datetime, got {type(deadline)!r}")
    now = dt.datetime.now(tz=deadline.tzinfo) if deadline.tzinfo else dt.datetime.now()
    return (deadline - now).total_seconds()


@dataclass(frozen=True)
class WaitingConfig:
    """
    Deadline and poll period of one subprocess run.

    timeout == 0 means "no deadline".
    interval is how often the executor checks the deadline and the cancel event.
    """

    timeout: float = DEFAULT_TIMEOUT_TICKS
    interval: float = DEFAULT_POLL_INTERVAL

    def __bool__(self):
        return self.timeout > 0

    @classmethod
    def check_arg(
        cls,
        arg: Optional[WaitingConfigArg] = None,
        timeout: Optional[Union[int, float, dt.timedelta]] = None,
        interval: Optional[Union[int, float, dt.timedelta]] = None,
    ) -> "WaitingConfig":
        """
        Normalise the accepted timeout forms.

        - ``True`` / ``False``: default deadline / no deadline
        - seconds or ``timedelta``: relative deadline
        - ``datetime``: absolute deadline
        - ``{"timeout" | "deadline", "interval"}``

        Negative timeouts clamp to 0; keyword arguments win over ``arg``.
        """
        if arg is None and timeout is None and interval is None:
            return DEFAULT_WAITING_CONFIG

        base_timeout: Optional[float] = DEFAULT_TIMEOUT_TICKS
        base_interval: Optional[float] = None

        if isinstance(arg, cls):
            if timeout is None and interval is None:
                return arg
            base_timeout, base_interval = arg.timeout, arg.interval
        elif isinstance(arg, bool):
            base_timeout = DEFAULT_TIMEOUT_TICKS if arg else 0.0
        elif isinstance(arg, (int, float, dt.timedelta)):
            base_timeout = _seconds(arg)
        elif isinstance(arg, dt.datetime):
            base_timeout = _until(arg)
        elif isinstance(arg, dict):
            if "deadline" in arg and "timeout" in arg:
                raise ValueError("Provide only one of 'deadline' or 'timeout' in WaitingConfig dict.")
            if arg.get("deadline") is not None:
                base_timeout = _until(arg["deadline"])
            else:
                base_timeout = _seconds(arg.get("timeout"))
            base_interval = _seconds(arg.get("interval"))
        elif arg is not None:
            raise TypeError(f"Unsupported WaitingConfig arg type: {type(arg)!r}")

        final_timeout = _seconds(timeout) if timeout is not None else base_timeout
        final_interval = _seconds(interval) if interval is not None else base_interval

        if final_timeout is None or final_timeout < 0:
            final_timeout = 0.0
        if final_interval is None or final_interval <= 0:
            final_interval = DEFAULT_POLL_INTERVAL

        return cls(timeout=float(final_timeout), interval=float(final_interval))

    def remaining(self, start: float) -> Optional[float]:
        """Seconds left before the deadline, None when there is no deadline."""
        if self.timeout <= 0:
            return None
        return self.timeout - (time.monotonic() - float(start))

    def expired(self, start: float) -> bool:
        left = self.remaining(start)
        return left is not None and left <= 0

    def next_tick(self, start: float) -> float:
        """Poll wait capped so a checkpoint never oversleeps the deadline."""
        left = self.remaining(start)
        if left is None:
            return self.interval
        return max(0.0, min(self.interval, left))


DEFAULT_WAITING_CONFIG = WaitingConfig()
