"""
locator.py: resolve the ``python`` and ``pip`` executables to drive.

Resolution is a pure function of :class:`~.pip_settings.PipSettings` and a
:class:`~.venv_state.VenvState` snapshot:

1. explicit overrides (``settings.python_path`` / ``settings.pip_path``),
2. the active venv's recorded paths,
3. ``PATH`` discovery (``python3``, ``python``; ``pip3``, ``pip``).

With a venv active the locator never falls back to another interpreter: a
missing venv interpreter is reported as ``venv_corrupted``.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from ..errors import ErrorKind, PipError
from .pip_settings import PipSettings
from .venv_state import VenvState, VenvStateManager

__all__ = [
    "Locator",
    "ResolvedInterpreter",
    "venv_bin_dir",
    "venv_python",
    "venv_pip",
    "resolve_python_executable",
    "find_uv_bin",
]

logger = logging.getLogger(__name__)

# Matches: "3" / "3.12" / "3.13.12" / "python3" / "python3.12" / "python3.13.12"
_PY_VERSION_RE = re.compile(
    r"^\s*(?:python)?\s*(\d+(?:\.\d+){0,2})\s*$",
    flags=re.IGNORECASE,
)

PYTHON_CANDIDATES = ("python3", "python")
PIP_CANDIDATES = ("pip3", "pip")


@dataclass(frozen=True)
class ResolvedInterpreter:
    python_path: Path
    pip_path: Optional[Path] = None
    venv_root: Optional[Path] = None


# ─────────────────────────────────────────────────────────────────────────────
# venv layout
# ─────────────────────────────────────────────────────────────────────────────

def _is_windows() -> bool:
    return os.name == "nt"


def venv_bin_dir(root: Path) -> Path:
    """``Scripts`` on Windows, ``bin`` elsewhere; prefers whichever exists."""
    root = Path(root)
    if (root / "Scripts").is_dir() and not (root / "bin").is_dir():
        return root / "Scripts"
    if (root / "bin").is_dir():
        return root / "bin"
    return root / ("Scripts" if _is_windows() else "bin")


def venv_python(root: Path, raise_error: bool = False) -> Optional[Path]:
    """
    Locate the Python executable inside a venv directory.

    Checks the standard platform-specific locations in order:

    * ``bin/python``        (POSIX)
    * ``bin/python3``       (POSIX fallback)
    * ``Scripts/python.exe`` (Windows)
    * ``Scripts/python``    (Windows bare)

    The path is made absolute but not resolved: resolving the symlink would
    land on the base interpreter and bypass the venv.
    """
    root = Path(root)
    candidates = [
        root / "bin" / "python",
        root / "bin" / "python3",
        root / "Scripts" / "python.exe",
        root / "Scripts" / "python",
    ]
    for c in candidates:
        if c.is_file():
            return c.absolute()

    if raise_error:
        raise PipError.of(ErrorKind.VENV_NOT_FOUND, f"No Python executable found inside venv: {root}")
    return None


def venv_pip(root: Path) -> Optional[Path]:
    root = Path(root)
    candidates = [
        root / "bin" / "pip",
        root / "bin" / "pip3",
        root / "Scripts" / "pip.exe",
        root / "Scripts" / "pip",
    ]
    for c in candidates:
        if c.is_file():
            return c.absolute()
    return None


# ─────────────────────────────────────────────────────────────────────────────
# executables
# ─────────────────────────────────────────────────────────────────────────────

def _looks_like_path(s: str) -> bool:
    if not s:
        return False
    if s.startswith(("~", ".", "/")):
        return True
    if _is_windows() and len(s) >= 2 and s[1] == ":":
        return True
    return "/" in s or "\\" in s


def resolve_python_executable(python: str | Path, search_path: Optional[str] = None) -> Path:
    """
    Resolve an interpreter selector to an absolute path.

    * ``"/usr/bin/python3"`` → used as-is when the file exists
    * ``"python3.12"``       → looked up via :func:`shutil.which`
    * ``"3.12"``             → prefixed with ``"python"`` then which'd

    Raises ``interpreter_not_found`` when nothing matches.
    """
    s = str(python).strip()
    p = Path(s).expanduser()

    if _looks_like_path(s) or p.is_file():
        if p.is_file():
            return p.absolute()
        raise PipError.of(ErrorKind.INTERPRETER_NOT_FOUND, f"Python executable not found: {s}")

    if _PY_VERSION_RE.match(s) and s[0].isdigit():
        s = f"python{s.strip()}"

    found = shutil.which(s, path=search_path)
    if not found:
        logger.error("resolve_python_executable: not found selector=%r", python)
        raise PipError.of(ErrorKind.INTERPRETER_NOT_FOUND, f"Python executable not found: {python!r}")
    return Path(found).absolute()


def _resolve_executable(value: str, kind: ErrorKind, label: str, search_path: Optional[str]) -> Path:
    p = Path(value).expanduser()
    if p.is_file():
        return p.absolute()
    if not _looks_like_path(value):
        found = shutil.which(value, path=search_path)
        if found:
            return Path(found).absolute()
    raise PipError.of(kind, f"{label} executable not found: {value}")


def _which_first(names: Sequence[str], search_path: Optional[str]) -> Optional[Path]:
    for name in names:
        found = shutil.which(name, path=search_path)
        if found:
            return Path(found).absolute()
    return None


def _recorded(snapshot: VenvState, index: int) -> Optional[Path]:
    # paths resolved before the first activation, while they still exist
    if snapshot.previous is None:
        return None
    path = snapshot.previous[index]
    if path is None or not Path(path).is_file():
        return None
    return Path(path)


def find_uv_bin() -> Path:
    """Path of the ``uv`` binary shipped by the ``uv`` distribution."""
    import uv

    found = Path(uv.find_uv_bin())
    if not found.is_file():
        raise PipError.of(ErrorKind.PIP_NOT_FOUND, f"uv resolved but is not a file: {found}")
    return found


# ─────────────────────────────────────────────────────────────────────────────
# Locator
# ─────────────────────────────────────────────────────────────────────────────

class Locator:
    """Finds the interpreter and pip for one settings/state pair."""

    def __init__(
        self,
        settings: PipSettings,
        state: VenvStateManager,
        *,
        search_path: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.state = state
        # None means os.environ["PATH"], as shutil.which does
        self.search_path = search_path

    def resolve(self, snapshot: Optional[VenvState] = None) -> ResolvedInterpreter:
        snapshot = self.state.snapshot() if snapshot is None else snapshot
        s = self.settings

        if s.python_path:
            python = resolve_python_executable(s.python_path, search_path=self.search_path)
        elif snapshot.active:
            python = snapshot.python_path
            if python is None or not Path(python).is_file():
                raise PipError.of(
                    ErrorKind.VENV_CORRUPTED,
                    f"interpreter of the active venv is missing: {python}",
                    context={"venv": str(snapshot.root)},
                )
        else:
            python = _recorded(snapshot, 0) or _which_first(PYTHON_CANDIDATES, self.search_path)
            if python is None:
                raise PipError.of(
                    ErrorKind.INTERPRETER_NOT_FOUND,
                    f"no Python interpreter found on PATH (tried {', '.join(PYTHON_CANDIDATES)})",
                )

        if s.pip_path:
            pip = _resolve_executable(s.pip_path, ErrorKind.PIP_NOT_FOUND, "pip", self.search_path)
        elif snapshot.active:
            pip = snapshot.pip_path
        else:
            pip = _recorded(snapshot, 1) or _which_first(PIP_CANDIDATES, self.search_path)

        logger.debug("locator: python=%s pip=%s venv=%s", python, pip, snapshot.root)
        return ResolvedInterpreter(
            python_path=Path(python),
            pip_path=Path(pip) if pip else None,
            venv_root=snapshot.root if snapshot.active else None,
        )

    def pip_command(self, snapshot: Optional[VenvState] = None) -> list[str]:
        """
        Argv prefix for pip invocations.

        * ``backend="uv"``   → ``["<uv>", "pip"]`` (target chosen with ``--python``)
        * explicit / venv / PATH pip → ``["<pip>"]``
        * otherwise          → ``["<python>", "-m", "pip"]``
        """
        if self.settings.backend == "uv":
            return [str(find_uv_bin()), "pip"]

        resolved = self.resolve(snapshot)
        if resolved.pip_path is not None:
            return [str(resolved.pip_path)]
        return [str(resolved.python_path), "-m", "pip"]
