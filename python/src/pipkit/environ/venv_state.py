"""
venv_state.py: explicitly owned virtual-environment activation state.

A subprocess cannot inherit a shell's ``source bin/activate``.  Activation is
therefore emulated: the manager records the venv's interpreter and pip paths
plus an environment overlay, and every request built afterwards carries
that overlay until deactivation.

State lives in a :class:`VenvStateManager` instance (no module globals).
Writers serialise on an :class:`threading.RLock`; readers take an immutable
:class:`VenvState` snapshot under the same lock, so a request built before a
later activation keeps the snapshot it was built with.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

__all__ = [
    "VenvState",
    "VenvStateManager",
    "INACTIVE",
    "UNSET_ON_ACTIVATE",
    "activation_overlay",
]

logger = logging.getLogger(__name__)

#: Variables removed from the child environment while a venv is active.
UNSET_ON_ACTIVATE: tuple[str, ...] = ("PYTHONHOME",)


@dataclass(frozen=True)
class VenvState:
    """Immutable snapshot of the activation state."""

    active: bool = False
    root: Optional[Path] = None
    python_path: Optional[Path] = None
    pip_path: Optional[Path] = None
    env: Mapping[str, str] = field(default_factory=dict)
    env_unset: tuple[str, ...] = ()
    #: Resolved (python, pip) in effect before the first activation; kept
    #: after deactivation so resolution returns to exactly those paths.
    previous: Optional[tuple[Optional[Path], Optional[Path]]] = None

    def __bool__(self) -> bool:
        return self.active

    def base(self) -> "VenvState":
        """The inactive state this snapshot came from."""
        if not self.active:
            return self
        if self.previous is None:
            return INACTIVE
        return VenvState(previous=self.previous)


INACTIVE = VenvState()


def activation_overlay(root: Path, bin_dir: Path, base_path: Optional[str] = None) -> dict[str, str]:
    """
    Environment changes a shell ``activate`` script would make.

    ``PATH`` is the venv bin directory prepended to ``base_path`` (the
    current process ``PATH`` when omitted).
    """
    base_path = os.environ.get("PATH", "") if base_path is None else base_path
    path = str(bin_dir) if not base_path else f"{bin_dir}{os.pathsep}{base_path}"
    return {
        "VIRTUAL_ENV": str(root),
        "PATH": path,
    }


class VenvStateManager:
    """Owner of one :class:`VenvState`; at most one venv is active at a time."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state: VenvState = INACTIVE

    def __repr__(self) -> str:
        state = self.snapshot()
        if not state.active:
            return "VenvStateManager(inactive)"
        return f"VenvStateManager(active={state.root})"

    # ── readers ───────────────────────────────────────────────────────────────

    def snapshot(self) -> VenvState:
        with self._lock:
            return self._state

    @property
    def active(self) -> bool:
        return self.snapshot().active

    @property
    def root(self) -> Optional[Path]:
        return self.snapshot().root

    def is_active_root(self, path: Path) -> bool:
        state = self.snapshot()
        if not state.active or state.root is None:
            return False
        return _same_path(state.root, path)

    # ── writers ───────────────────────────────────────────────────────────────

    def activate(
        self,
        root: Path,
        python_path: Path,
        pip_path: Optional[Path],
        bin_dir: Path,
        *,
        previous: Optional[tuple[Optional[Path], Optional[Path]]] = None,
        base_path: Optional[str] = None,
    ) -> VenvState:
        """
        Record ``root`` as the active venv, replacing any current one.

        Callers validate the venv first; this method only swaps state.
        ``previous`` is kept from the first activation when already active.
        """
        with self._lock:
            current = self._state
            if current.active:
                logger.info("venv: replacing active env %s with %s", current.root, root)
                previous = current.previous

            new_state = VenvState(
                active=True,
                root=root,
                python_path=python_path,
                pip_path=pip_path,
                env=activation_overlay(root, bin_dir, base_path=base_path),
                env_unset=UNSET_ON_ACTIVATE,
                previous=previous,
            )
            self._state = new_state

        logger.info("venv: activated %s", root)
        logger.debug("venv: overlay=%s unset=%s", dict(new_state.env), new_state.env_unset)
        return new_state

    def deactivate(self) -> VenvState:
        """Return to the inactive state; a no-op when nothing is active."""
        with self._lock:
            current = self._state
            if not current.active:
                logger.debug("venv: deactivate called while inactive")
                return current
            restored = self._state = current.base()

        logger.info("venv: deactivated %s", current.root)
        return restored


def _same_path(a: Path, b: Path) -> bool:
    try:
        return Path(a).resolve() == Path(b).resolve()
    except OSError:
        return Path(a).absolute() == Path(b).absolute()
