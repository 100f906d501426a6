"""
environment.py — :class:`PipManager`, the facade over one pip installation.

Every operation follows the same path::

    CommandBuilder (Locator + VenvState snapshot) -> ExecutionRequest
        -> CommandExecutor -> ExecutionResult | PipError
        -> parsers -> typed record

Typical usage
-------------
::

    pm = PipManager(PipSettings.from_env())
    pm.venv.create(".venv")
    pm.activate_venv(".venv")
    pm.install("requests>=2.31")
    for pkg in pm.list_packages():
        print(pkg.name, pkg.version)

Activation is per manager: two managers never see each other's venv.
"""

from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional

from ..concurrent.threading import Job, run_jobs
from ..errors import ErrorKind, PipError
from ..pip.builder import CommandBuilder
from ..pip.models import (
    InstallResult,
    InstalledPackage,
    OutdatedPackage,
    PackageInfo,
    PackageSpec,
    PipVersion,
    SearchResult,
    UninstallResult,
    VenvCreateOptions,
    VenvInfo,
)
from ..pip.parsers import (
    format_freeze,
    parse_freeze,
    parse_install,
    parse_list,
    parse_outdated,
    parse_pip_version,
    parse_python_version,
    parse_search,
    parse_show,
    parse_uninstall,
)
from .locator import Locator
from .pip_settings import DEFAULT_CALL_OPTIONS, CallOptions, PipSettings
from .system_command import CommandExecutor, ExecutionResult
from .venv import VenvManager
from .venv_state import VenvState, VenvStateManager

__all__ = ["PipManager"]

logger = logging.getLogger(__name__)

Warnings = Optional[list]


def _canonical(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def _stdout(result: ExecutionResult, operation: str, warnings: Warnings) -> str:
    """``result.stdout``, flagged when the capture limit dropped its head."""
    if result.truncated:
        message = "%s: output exceeded the capture limit; leading lines were dropped"
        logger.warning(message, operation)
        if warnings is not None:
            warnings.append(message % operation)
    return result.stdout


class PipManager:
    """
    Package and venv operations bound to one settings object and one
    activation state.

    Parameters
    ----------
    settings:
        Manager-level configuration.  Defaults to :meth:`PipSettings.from_env`.
    executor:
        Command runner.  Tests pass a scripted subclass.
    state:
        Activation state owner.  A fresh, inactive one by default.
    search_path:
        ``PATH`` used for interpreter discovery; ``None`` uses the process ``PATH``.
    """

    def __init__(
        self,
        settings: Optional[PipSettings] = None,
        *,
        executor: Optional[CommandExecutor] = None,
        state: Optional[VenvStateManager] = None,
        search_path: Optional[str] = None,
    ) -> None:
        self.settings = settings or PipSettings.from_env()
        self.state = state or VenvStateManager()
        self.locator = Locator(self.settings, self.state, search_path=search_path)
        self.builder = CommandBuilder(self.settings, self.locator, self.state)
        self.executor = executor or CommandExecutor(
            self.settings.retry_policy(),
            max_output_bytes=self.settings.max_output_bytes,
        )
        self.venv = VenvManager(self.settings, self.state, self.locator, self.builder, self.executor)

    def __repr__(self) -> str:
        return f"PipManager(backend={self.settings.backend!r}, state={self.state!r})"

    # ── plumbing ──────────────────────────────────────────────────────────────

    @staticmethod
    def _call(call: Optional[CallOptions]) -> CallOptions:
        return DEFAULT_CALL_OPTIONS if call is None else call

    def _execute(self, request, call: CallOptions) -> ExecutionResult:
        return self.executor.execute(request, cancel=call.cancel)

    # ── packages ──────────────────────────────────────────────────────────────

    def install(
        self,
        package: str | PackageSpec,
        *,
        call: Optional[CallOptions] = None,
        warnings: Warnings = None,
        **spec_fields: Any,
    ) -> InstallResult:
        """
        Install one package.

        ``package`` is a :class:`PackageSpec` or a requirement string such as
        ``"requests[socks]>=2.31"``; ``spec_fields`` (``upgrade=True``,
        ``version=">=2"``, ``extras={"socks"}``...) merge into the spec.
        """
        call = self._call(call)
        spec = PackageSpec.parse(package, **spec_fields)
        request = self.builder.install(spec, call)

        logger.info("install: package=%s", spec.name or spec.source)
        result = self._execute(request, call)

        parsed = parse_install(_stdout(result, "install", warnings), warnings=warnings)
        parsed.package = spec.name or spec.source
        parsed.result = result
        return parsed

    def install_requirements(
        self,
        path: str | Path,
        *,
        upgrade: bool = False,
        call: Optional[CallOptions] = None,
        warnings: Warnings = None,
    ) -> InstallResult:
        call = self._call(call)
        request = self.builder.install_requirements(path, call, upgrade=upgrade)

        logger.info("install_requirements: path=%s", path)
        result = self._execute(request, call)

        parsed = parse_install(_stdout(result, "install-requirements", warnings), warnings=warnings)
        parsed.package = str(path)
        parsed.result = result
        return parsed

    def uninstall(
        self,
        *names: str,
        call: Optional[CallOptions] = None,
        warnings: Warnings = None,
    ) -> UninstallResult:
        call = self._call(call)
        request = self.builder.uninstall(list(names), call)

        logger.info("uninstall: names=%s", list(names))
        result = self._execute(request, call)

        stdout = _stdout(result, "uninstall", warnings)
        parsed = parse_uninstall(f"{stdout}\n{result.stderr}", warnings=warnings)
        parsed.names = list(names)
        parsed.result = result
        return parsed

    def list_packages(self, *, call: Optional[CallOptions] = None, warnings: Warnings = None) -> list[InstalledPackage]:
        call = self._call(call)
        result = self._execute(self.builder.list_packages(call), call)
        return parse_list(_stdout(result, "list", warnings), warnings=warnings)

    def outdated(self, *, call: Optional[CallOptions] = None, warnings: Warnings = None) -> list[OutdatedPackage]:
        call = self._call(call)
        result = self._execute(self.builder.outdated(call), call)
        return parse_outdated(_stdout(result, "outdated", warnings), warnings=warnings)

    def show(
        self,
        name: str,
        *,
        files: bool = False,
        call: Optional[CallOptions] = None,
        warnings: Warnings = None,
    ) -> PackageInfo:
        call = self._call(call)
        request = self.builder.show(name, call, files=files)
        result = self._execute(request, call)

        records = parse_show(_stdout(result, "show", warnings), warnings=warnings)
        wanted = _canonical(name)
        for rec in records:
            if _canonical(rec.name) == wanted:
                return rec
        if records:
            return records[0]
        raise PipError.of(
            ErrorKind.PACKAGE_NOT_FOUND,
            f"package not found: {name}",
            command=request.command_line,
            exit_code=result.returncode,
            output=result.output,
        )

    def show_many(
        self,
        names: Iterable[str],
        *,
        max_workers: int = 4,
        call: Optional[CallOptions] = None,
    ) -> dict[str, PackageInfo]:
        """
        ``pip show`` for several packages concurrently, keyed by requested name.

        Packages that are not installed are left out; other failures raise.
        """
        names = list(dict.fromkeys(names))
        jobs = [Job.make(self.show, n, call=call, key=n) for n in names]

        out: dict[str, PackageInfo] = {}
        for res in run_jobs(jobs, max_workers=max_workers, name="pipkit-show"):
            if res.ok:
                out[res.key] = res.value
            elif isinstance(res.error, PipError) and res.error.is_kind(ErrorKind.PACKAGE_NOT_FOUND):
                logger.info("show_many: %s is not installed", res.key)
            else:
                raise res.error
        return out

    def is_installed(self, name: str, *, call: Optional[CallOptions] = None) -> bool:
        try:
            self.show(name, call=call)
        except PipError as e:
            if e.is_kind(ErrorKind.PACKAGE_NOT_FOUND):
                return False
            raise
        return True

    def freeze(self, *, call: Optional[CallOptions] = None, warnings: Warnings = None) -> list[InstalledPackage]:
        call = self._call(call)
        result = self._execute(self.builder.freeze(call), call)
        return parse_freeze(_stdout(result, "freeze", warnings), warnings=warnings)

    def generate_requirements(
        self,
        path: str | Path,
        *,
        call: Optional[CallOptions] = None,
        warnings: Warnings = None,
    ) -> list[InstalledPackage]:
        """Write the ``freeze`` of the target environment to ``path``."""
        packages = self.freeze(call=call, warnings=warnings)
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(format_freeze(packages), encoding="utf-8")
        except PermissionError as e:
            raise PipError.of(ErrorKind.PERMISSION_DENIED, f"cannot write {target}: {e}", cause=e) from e
        except OSError as e:
            raise PipError.of(ErrorKind.COMMAND_FAILED, f"failed to write {target}: {e}", cause=e) from e

        logger.info("generate_requirements: wrote %s packages to %s", len(packages), target)
        return packages

    def search(self, query: str, *, call: Optional[CallOptions] = None, warnings: Warnings = None) -> list[SearchResult]:
        """``pip search``; PyPI has disabled its XML-RPC API, which surfaces as ``feature_disabled``."""
        call = self._call(call)
        result = self._execute(self.builder.search(query, call), call)
        return parse_search(_stdout(result, "search", warnings), warnings=warnings)

    # ── interpreter ───────────────────────────────────────────────────────────

    def pip_version(self, *, call: Optional[CallOptions] = None) -> PipVersion:
        call = self._call(call)
        request = self.builder.pip_version(call)
        result = self._execute(request, call)

        parsed = parse_pip_version(result.stdout)
        if parsed is None:
            raise PipError.of(
                ErrorKind.COMMAND_FAILED,
                "unrecognised pip --version output",
                command=request.command_line,
                exit_code=result.returncode,
                output=result.output,
            )
        return parsed

    def python_version(self, *, call: Optional[CallOptions] = None) -> str:
        call = self._call(call)
        request = self.builder.python_version(call)
        result = self._execute(request, call)
        # Python 2 printed the banner on stderr
        return parse_python_version(f"{result.stdout}\n{result.stderr}")

    def ensure_pip(self, *, upgrade: bool = True, call: Optional[CallOptions] = None) -> ExecutionResult:
        """Bootstrap pip into the target interpreter with ``ensurepip``."""
        call = self._call(call)
        return self._execute(self.builder.ensure_pip(call, upgrade=upgrade), call)

    def install_pip(self, *, call: Optional[CallOptions] = None) -> str:
        """
        Make pip available to the target interpreter.

        Nothing runs when ``pip --version`` already works.  Otherwise
        ``ensurepip`` is tried first, then ``get-pip.py`` downloaded from
        :data:`~pipkit.pip.builder.GET_PIP_URL`.

        Returns
        -------
        str
            ``"present"``, ``"ensurepip"`` or ``"get-pip"``.
        """
        call = self._call(call)
        try:
            found = self.pip_version(call=call)
        except PipError as e:
            if not e.is_kind(ErrorKind.PIP_NOT_FOUND, ErrorKind.COMMAND_FAILED):
                raise
            logger.info("install_pip: pip unavailable (%s): %s", e.kind, e.message)
        else:
            logger.info("install_pip: pip %s already installed", found.version)
            return "present"

        try:
            self._execute(self.builder.ensure_pip(call), call)
        except PipError as e:
            if e.is_kind(ErrorKind.CANCELLED):
                raise
            logger.warning("install_pip: ensurepip failed (%s), falling back to get-pip.py: %s", e.kind, e.message)
        else:
            logger.info("install_pip: installed pip with ensurepip")
            return "ensurepip"

        with tempfile.TemporaryDirectory(prefix="pipkit-get-pip-") as tmp:
            script = Path(tmp) / "get-pip.py"
            self._execute(self.builder.fetch_get_pip(script, call), call)
            self._execute(self.builder.get_pip(script, call), call)

        logger.info("install_pip: installed pip with get-pip.py")
        return "get-pip"

    # ── venv ──────────────────────────────────────────────────────────────────

    def create_venv(
        self,
        path: str | Path,
        opts: Optional[VenvCreateOptions] = None,
        *,
        call: Optional[CallOptions] = None,
    ) -> VenvInfo:
        return self.venv.create(path, opts or VenvCreateOptions(), self._call(call))

    def activate_venv(self, path: str | Path) -> VenvState:
        return self.venv.activate(path)

    def deactivate_venv(self) -> VenvState:
        return self.venv.deactivate()

    def remove_venv(self, path: str | Path) -> None:
        self.venv.remove(path)

    def venv_info(self, path: str | Path) -> VenvInfo:
        return self.venv.info(path)

    def list_venvs(self, base_dir: str | Path) -> list[VenvInfo]:
        return self.venv.list(base_dir)

    @property
    def active_venv(self) -> Optional[Path]:
        return self.state.root
