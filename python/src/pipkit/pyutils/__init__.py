"""Timeout and retry helpers."""

from .retry import RetryPolicy, random_jitter
from .waiting_config import WaitingConfig, WaitingConfigArg
