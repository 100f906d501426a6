"""
venv.py: virtual-environment lifecycle: create, activate, deactivate,
remove, inspect.

Activation itself is held by :class:`~.venv_state.VenvStateManager`; this
module validates directories, runs the creation commands and reads
``pyvenv.cfg``.
"""

from __future__ import annotations

import datetime as dt
import logging
import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ..concurrent.threading import Job, run_jobs
from ..errors import ErrorKind, PipError
from ..pip.models import VenvCreateOptions, VenvInfo
from ..pip.parsers import parse_python_version, parse_pyvenv_cfg
from .locator import Locator, venv_bin_dir, venv_pip, venv_python
from .pip_settings import DEFAULT_CALL_OPTIONS, CallOptions, PipSettings
from .system_command import CommandExecutor
from .venv_state import VenvState, VenvStateManager

if TYPE_CHECKING:
    from ..pip.builder import CommandBuilder

__all__ = ["VenvManager", "is_venv_dir"]

logger = logging.getLogger(__name__)

#: Output that means the stdlib ``venv`` route cannot work on this interpreter.
_VENV_UNAVAILABLE_MARKERS = (
    "No module named venv",
    "No module named 'venv'",
    "ensurepip is not available",
    "No module named ensurepip",
    "No module named 'ensurepip'",
)
_VIRTUALENV_MISSING_MARKERS = (
    "No module named virtualenv",
    "No module named 'virtualenv'",
)

PROBE_TIMEOUT = 30.0


def _abs(path: str | Path) -> Path:
    return Path(path).expanduser().absolute()


def _mentions(output: str, markers) -> bool:
    # pip and venv wrap long messages across lines
    text = " ".join(output.split())
    return any(m in text for m in markers)


def is_venv_dir(path: str | Path) -> bool:
    """A directory holding a venv interpreter or a ``pyvenv.cfg`` marker."""
    root = Path(path)
    if not root.is_dir():
        return False
    return venv_python(root) is not None or (root / "pyvenv.cfg").is_file()


def _hosts_running_interpreter(root: Path) -> bool:
    try:
        prefix = Path(sys.prefix).resolve()
        return prefix == root.resolve()
    except OSError:
        return False


class VenvManager:
    def __init__(
        self,
        settings: PipSettings,
        state: VenvStateManager,
        locator: Locator,
        builder: "CommandBuilder",
        executor: CommandExecutor,
    ) -> None:
        self.settings = settings
        self.state = state
        self.locator = locator
        self.builder = builder
        self.executor = executor

    # ── validation ────────────────────────────────────────────────────────────

    def validate(self, path: str | Path) -> Path:
        """
        Interpreter of the venv at ``path``.

        Raises ``venv_not_found`` when the directory is missing or is not a
        venv, ``venv_corrupted`` when ``pyvenv.cfg`` exists but the
        interpreter does not.
        """
        root = _abs(path)
        if not root.is_dir():
            raise PipError.of(ErrorKind.VENV_NOT_FOUND, f"virtual environment not found: {root}")

        python = venv_python(root)
        if python is not None:
            return python

        if (root / "pyvenv.cfg").is_file():
            raise PipError.of(
                ErrorKind.VENV_CORRUPTED,
                f"virtual environment has no interpreter: {root}",
                context={"venv": str(root)},
            )
        raise PipError.of(ErrorKind.VENV_NOT_FOUND, f"not a virtual environment: {root}")

    # ── create ────────────────────────────────────────────────────────────────

    def _check_target(self, root: Path, opts: VenvCreateOptions) -> None:
        if not root.exists():
            return
        if not root.is_dir():
            raise PipError.of(ErrorKind.INVALID_ARGUMENT, f"path exists and is not a directory: {root}")
        if is_venv_dir(root):
            if not opts.force:
                raise PipError.of(ErrorKind.VENV_ALREADY_EXISTS, f"virtual environment already exists: {root}")
            return
        if any(root.iterdir()):
            raise PipError.of(
                ErrorKind.INVALID_ARGUMENT,
                f"directory is not empty and is not a virtual environment: {root}",
            )

    def create(
        self,
        path: str | Path,
        opts: VenvCreateOptions = VenvCreateOptions(),
        call: CallOptions = DEFAULT_CALL_OPTIONS,
    ) -> VenvInfo:
        """
        Create a venv at ``path``; the activation state is left untouched.

        The stdlib ``venv`` module is tried first.  When it or ``ensurepip``
        is missing (common on Debian-based system Pythons) creation falls
        back to ``python -m virtualenv`` and then the ``virtualenv`` command.
        The ``uv`` backend uses ``uv venv`` instead.
        """
        root = _abs(path)
        self._check_target(root, opts)
        root.parent.mkdir(parents=True, exist_ok=True)

        logger.info("venv create: path=%s backend=%s force=%s", root, self.settings.backend, opts.force)

        if self.settings.backend == "uv":
            if opts.force and root.exists():
                self._rmtree(root)
            request = self.builder.venv_create(root, opts, call, tool="uv")
            self.executor.execute(request, cancel=call.cancel)
        else:
            self._create_with_fallback(root, opts, call)

        self.validate(root)
        logger.info("venv create: created %s", root)
        return self.info(root, probe=False)

    def _create_with_fallback(self, root: Path, opts: VenvCreateOptions, call: CallOptions) -> None:
        request = self.builder.venv_create(root, opts, call, tool="venv")
        first = self.executor.execute(request, cancel=call.cancel, raise_error=False)
        if not isinstance(first, PipError):
            return
        if not _mentions(first.output, _VENV_UNAVAILABLE_MARKERS):
            raise first

        logger.warning("venv create: venv module unusable (%s), trying virtualenv", first.message)

        for tool in ("virtualenv-module", "virtualenv"):
            if tool == "virtualenv" and shutil.which("virtualenv") is None:
                logger.debug("venv create: no virtualenv command on PATH")
                continue

            request = self.builder.venv_create(root, opts, call, tool=tool)
            result = self.executor.execute(request, cancel=call.cancel, raise_error=False)
            if not isinstance(result, PipError):
                return
            if tool == "virtualenv-module" and _mentions(result.output, _VIRTUALENV_MISSING_MARKERS):
                continue
            raise result

        raise PipError.of(
            first.kind,
            f"{first.message}; virtualenv is not available either",
            command=first.command,
            exit_code=first.exit_code,
            output=first.output,
            suggestions=(
                "Install the venv module (e.g. apt install python3-venv)",
                "Install virtualenv: pip install virtualenv",
            ),
            context=first.context,
        )

    # ── activation ────────────────────────────────────────────────────────────

    def activate(self, path: str | Path) -> VenvState:
        """Validate ``path`` and make it the active venv, replacing any other."""
        root = _abs(path)
        python = self.validate(root)

        snapshot = self.state.snapshot()
        previous = None
        if not snapshot.active:
            previous = self._resolve_previous(snapshot)

        return self.state.activate(
            root,
            python,
            venv_pip(root),
            venv_bin_dir(root),
            previous=previous,
        )

    def _resolve_previous(self, snapshot: VenvState) -> Optional[tuple[Optional[Path], Optional[Path]]]:
        try:
            resolved = self.locator.resolve(snapshot)
        except PipError as e:
            # nothing outside the venv to return to
            logger.debug("venv activate: no pre-activation interpreter: %s", e.message)
            return None
        return resolved.python_path, resolved.pip_path

    def deactivate(self) -> VenvState:
        return self.state.deactivate()

    # ── remove ────────────────────────────────────────────────────────────────

    def _rmtree(self, root: Path) -> None:
        if _hosts_running_interpreter(root):
            raise PipError.of(
                ErrorKind.INVALID_ARGUMENT,
                f"refusing to remove the environment of the running interpreter: {root}",
            )
        try:
            shutil.rmtree(root)
        except PermissionError as e:
            raise PipError.of(ErrorKind.PERMISSION_DENIED, f"cannot remove {root}: {e}", cause=e) from e
        except OSError as e:
            raise PipError.of(ErrorKind.COMMAND_FAILED, f"failed to remove {root}: {e}", cause=e) from e

    def remove(self, path: str | Path) -> None:
        """
        Delete the venv at ``path``, deactivating it first when it is active.

        A corrupted venv (``pyvenv.cfg`` without interpreter) can be removed.
        """
        root = _abs(path)
        if not is_venv_dir(root):
            raise PipError.of(ErrorKind.VENV_NOT_FOUND, f"virtual environment not found: {root}")

        if _hosts_running_interpreter(root):
            raise PipError.of(
                ErrorKind.INVALID_ARGUMENT,
                f"refusing to remove the environment of the running interpreter: {root}",
            )

        if self.state.is_active_root(root):
            self.state.deactivate()

        logger.debug("venv remove: removing %s", root)
        self._rmtree(root)
        logger.info("venv remove: removed %s", root)

    # ── inspection ────────────────────────────────────────────────────────────

    def python_version(self, python: str | Path) -> str:
        request = self.builder.python_version(CallOptions(timeout=PROBE_TIMEOUT, retries=0), python=python)
        result = self.executor.execute(request)
        return parse_python_version(f"{result.stdout}\n{result.stderr}")

    def info(self, path: str | Path, *, probe: bool = True) -> VenvInfo:
        """
        Describe the venv at ``path``.

        ``python_version`` comes from ``pyvenv.cfg`` and, when absent and
        ``probe`` is set, from running ``python --version``.
        """
        root = _abs(path)
        python = self.validate(root)

        cfg_path = root / "pyvenv.cfg"
        config = parse_pyvenv_cfg(cfg_path.read_text(encoding="utf-8", errors="replace")) if cfg_path.is_file() else {}

        version = config.get("version") or config.get("version_info") or ""
        if not version and probe:
            version = self.python_version(python)

        stamp = (cfg_path if cfg_path.is_file() else root).stat().st_mtime

        return VenvInfo(
            path=root,
            python_path=python,
            pip_path=venv_pip(root),
            is_active=self.state.is_active_root(root),
            created_at=dt.datetime.fromtimestamp(stamp),
            python_version=version,
            home=config.get("home", ""),
            include_system_site_packages=config.get("include-system-site-packages", "").lower() == "true",
            prompt=config.get("prompt", "").strip("'\""),
            config=config,
        )

    def list(self, base_dir: str | Path, *, max_workers: int = 4) -> list[VenvInfo]:
        """
        Venvs directly under ``base_dir``, sorted by path.

        Interpreter versions missing from ``pyvenv.cfg`` are probed
        concurrently.  Corrupted venvs are skipped with a warning.
        """
        base = _abs(base_dir)
        if not base.is_dir():
            raise PipError.of(ErrorKind.VENV_NOT_FOUND, f"directory not found: {base}")

        infos: list[VenvInfo] = []
        for candidate in sorted(p for p in base.iterdir() if is_venv_dir(p)):
            try:
                infos.append(self.info(candidate, probe=False))
            except PipError as e:
                if not e.is_kind(ErrorKind.VENV_CORRUPTED):
                    raise
                logger.warning("venv list: skipping %s: %s", candidate, e.message)

        jobs = [
            Job.make(self.python_version, info.python_path, key=i)
            for i, info in enumerate(infos)
            if not info.python_version
        ]
        for res in run_jobs(jobs, max_workers=max_workers, name="pipkit-venv-probe"):
            if res.ok:
                infos[res.key].python_version = res.value
            else:
                logger.warning("venv list: version probe failed for %s: %s", infos[res.key].path, res.error)

        return infos
