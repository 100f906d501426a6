"""
builder.py: turn structured requests into :class:`ExecutionRequest` objects.

Every builder method validates first and raises ``invalid_argument`` before
anything runs.  Argv is always a list; nothing is shell-interpreted.

Environment overlay, later layers win::

    stable pip/python vars  <  network options  <  settings.environment
        <  venv activation overlay  <  per-call env
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from packaging.markers import InvalidMarker, Marker
from packaging.requirements import InvalidRequirement, Requirement
from packaging.specifiers import InvalidSpecifier, SpecifierSet

from ..environ.locator import Locator, find_uv_bin, resolve_python_executable
from ..environ.pip_settings import DEFAULT_CALL_OPTIONS, CallOptions, PipSettings
from ..environ.system_command import ExecutionRequest
from ..environ.venv_state import VenvState, VenvStateManager
from ..errors import ErrorKind, PipError
from .models import PackageSpec, VenvCreateOptions

__all__ = [
    "CommandBuilder",
    "STABLE_ENV",
    "GENERAL_OPTIONS",
    "OPERATION_OPTIONS",
    "validate_name",
    "normalize_version",
    "format_requirement",
    "validate_marker",
    "GET_PIP_URL",
]

logger = logging.getLogger(__name__)

# PEP 508 distribution name
_NAME_RE = re.compile(r"^([A-Z0-9]|[A-Z0-9][A-Z0-9._-]*[A-Z0-9])$", re.IGNORECASE)
_BARE_VERSION_RE = re.compile(r"^\d[\w.+!-]*$")

#: Bootstrap script used when ``ensurepip`` is unavailable.
GET_PIP_URL = "https://bootstrap.pypa.io/get-pip.py"

# run as ``python -c _FETCH_SCRIPT <url> <dest>`` by the target interpreter
_FETCH_SCRIPT = (
    "import sys, urllib.request\n"
    "with urllib.request.urlopen(sys.argv[1], timeout=30) as r, open(sys.argv[2], 'wb') as f:\n"
    "    f.write(r.read())\n"
)

#: Pins a stable encoding and a non-interactive pip.
STABLE_ENV: dict[str, str] = {
    "PYTHONIOENCODING": "utf-8",
    "PYTHONUTF8": "1",
    "PIP_NO_INPUT": "1",
    "PIP_DISABLE_PIP_VERSION_CHECK": "1",
    "PIP_NO_COLOR": "1",
}

# option name -> takes a value
GENERAL_OPTIONS: dict[str, bool] = {
    "isolated": False,
    "verbose": False,
    "quiet": False,
    "no-cache-dir": False,
    "cache-dir": True,
    "log": True,
    "cert": True,
    "client-cert": True,
    "retries": True,
    "timeout": True,
    "exists-action": True,
    "require-virtualenv": False,
    "no-python-version-warning": False,
}

OPERATION_OPTIONS: dict[str, dict[str, bool]] = {
    "install": {
        "index-url": True,
        "extra-index-url": True,
        "no-index": False,
        "find-links": True,
        "trusted-host": True,
        "proxy": True,
        "target": True,
        "prefix": True,
        "root": True,
        "src": True,
        "constraint": True,
        "no-binary": True,
        "only-binary": True,
        "prefer-binary": False,
        "no-build-isolation": False,
        "use-pep517": False,
        "config-settings": True,
        "compile": False,
        "no-compile": False,
        "no-warn-script-location": False,
        "no-warn-conflicts": False,
        "ignore-installed": False,
        "ignore-requires-python": False,
        "upgrade-strategy": True,
        "platform": True,
        "python-version": True,
        "implementation": True,
        "abi": True,
        "progress-bar": True,
        "root-user-action": True,
        "break-system-packages": False,
        "dry-run": False,
        "report": True,
    },
    "uninstall": {
        "root-user-action": True,
        "break-system-packages": False,
    },
    "list": {
        "local": False,
        "user": False,
        "path": True,
        "not-required": False,
        "exclude-editable": False,
        "include-editable": False,
        "exclude": True,
        "pre": False,
        "index-url": True,
        "extra-index-url": True,
    },
    "show": {
        "files": False,
    },
    "freeze": {
        "local": False,
        "user": False,
        "path": True,
        "all": False,
        "exclude-editable": False,
        "exclude": True,
        "requirement": True,
    },
    "search": {
        "index": True,
    },
}
OPERATION_OPTIONS["install-requirements"] = OPERATION_OPTIONS["install"]
OPERATION_OPTIONS["outdated"] = OPERATION_OPTIONS["list"]


def _invalid(message: str, **kwargs: Any) -> PipError:
    return PipError.of(ErrorKind.INVALID_ARGUMENT, message, **kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

def validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise _invalid("package name is required")
    if not _NAME_RE.match(name):
        raise _invalid(f"invalid package name: {name!r}")
    return name


def validate_marker(marker: str) -> str:
    """Canonical text of a PEP 508 environment marker."""
    try:
        return str(Marker(marker.strip()))
    except InvalidMarker as e:
        raise _invalid(f"invalid environment marker: {marker!r}", cause=e) from e


def normalize_version(version: str) -> str:
    """
    Validate a pip constraint; a bare version becomes ``==version``.

    Whitespace is removed, the clause order is kept as written.
    """
    version = re.sub(r"\s+", "", version or "")
    if not version:
        return ""
    if _BARE_VERSION_RE.match(version):
        version = f"=={version}"
    try:
        SpecifierSet(version)
    except InvalidSpecifier as e:
        raise _invalid(f"invalid version constraint: {version!r}", cause=e) from e
    return version


def format_requirement(name: str, version: str = "", extras: Iterable[str] = (), marker: str = "") -> str:
    """``name[extra1,extra2]>=1.0,<2.0; marker`` with sorted extras, validated."""
    name = validate_name(name)
    extras = sorted({e.strip() for e in extras if e and e.strip()})
    for extra in extras:
        if not _NAME_RE.match(extra):
            raise _invalid(f"invalid extra {extra!r} for {name}")

    text = name
    if extras:
        text += f"[{','.join(extras)}]"
    text += normalize_version(version)
    if marker and marker.strip():
        text += f"; {validate_marker(marker)}"

    try:
        Requirement(text)
    except InvalidRequirement as e:
        raise _invalid(f"invalid requirement: {text!r}", cause=e) from e
    return text


def option_args(
    operation: str,
    options: Optional[Mapping[str, Any]],
    *,
    strict: bool = True,
) -> list[str]:
    """
    Render an option mapping as argv flags.

    ``True`` renders ``--flag``, ``False``/``None`` are dropped, sequences
    repeat the flag.  Keys outside the allow-list raise ``invalid_argument``;
    with ``strict=False`` keys valid for another operation are skipped.
    """
    if not options:
        return []

    allowed = dict(GENERAL_OPTIONS)
    allowed.update(OPERATION_OPTIONS.get(operation, {}))

    args: list[str] = []
    for raw_key in sorted(options):
        key = str(raw_key).strip().lstrip("-").replace("_", "-")
        value = options[raw_key]

        if key not in allowed:
            known_elsewhere = any(key in opts for opts in OPERATION_OPTIONS.values())
            if not strict and known_elsewhere:
                logger.debug("builder: skipping option %s for %s", key, operation)
                continue
            raise _invalid(f"option --{key} is not allowed for {operation}")

        takes_value = allowed[key]
        if value is None or value is False:
            continue

        if not takes_value:
            if value is not True:
                raise _invalid(f"option --{key} is a flag and takes no value, got {value!r}")
            args.append(f"--{key}")
            continue

        if value is True:
            raise _invalid(f"option --{key} requires a value")

        values = value if isinstance(value, (list, tuple)) else [value]
        for v in values:
            args.extend([f"--{key}", str(v)])
    return args


# ─────────────────────────────────────────────────────────────────────────────
# CommandBuilder
# ─────────────────────────────────────────────────────────────────────────────

class CommandBuilder:
    """Builds one :class:`ExecutionRequest` per operation."""

    def __init__(self, settings: PipSettings, locator: Locator, state: VenvStateManager) -> None:
        self.settings = settings
        self.locator = locator
        self.state = state

    @property
    def uv(self) -> bool:
        return self.settings.backend == "uv"

    # ── shared pieces ─────────────────────────────────────────────────────────

    def _pip_prefix(self, snapshot: VenvState, target_python: bool = True) -> list[str]:
        prefix = self.locator.pip_command(snapshot)
        if self.uv and target_python:
            prefix += ["--python", str(self.locator.resolve(snapshot).python_path)]
        return prefix

    def _network_args(self, call: CallOptions, index_url: str = "") -> list[str]:
        net = call.merged(self.settings)
        args: list[str] = []

        if index_url or net["index_url"]:
            args += ["--index-url", index_url or net["index_url"]]
        for url in net["extra_index_urls"]:
            args += ["--extra-index-url", url]
        for host in net["trusted_hosts"]:
            args += ["--allow-insecure-host" if self.uv else "--trusted-host", host]

        if not self.uv:
            if net["proxy"]:
                args += ["--proxy", net["proxy"]]
            if net["socket_timeout"] is not None:
                args += ["--timeout", f"{float(net['socket_timeout']):g}"]
        return args

    def _cache_args(self) -> list[str]:
        if self.settings.cache_dir:
            return ["--cache-dir", str(self.settings.cache_dir)]
        return []

    def _env(self, snapshot: VenvState, call: CallOptions) -> dict[str, str]:
        env = dict(STABLE_ENV)

        net = call.merged(self.settings)
        if net["proxy"]:
            env["HTTP_PROXY"] = net["proxy"]
            env["HTTPS_PROXY"] = net["proxy"]
        if self.uv and net["socket_timeout"] is not None:
            env["UV_HTTP_TIMEOUT"] = f"{int(float(net['socket_timeout']))}"

        env.update(self.settings.environment)
        if snapshot.active:
            env.update(snapshot.env)
        env.update(call.env)
        return env

    def _request(
        self,
        args: Sequence[str],
        operation: str,
        snapshot: VenvState,
        call: CallOptions,
        *,
        retries: Optional[int] = None,
    ) -> ExecutionRequest:
        request = ExecutionRequest(
            args=tuple(args),
            env=self._env(snapshot, call),
            env_unset=snapshot.env_unset if snapshot.active else (),
            cwd=call.cwd,
            timeout=call.resolve_timeout(self.settings),
            retries=call.resolve_retries(self.settings) if retries is None else retries,
            operation=operation,
        )
        logger.debug("builder: op=%s cmd=%s", operation, request.command_line)
        return request

    def _extra(self, operation: str) -> list[str]:
        return option_args(operation, self.settings.extra_options, strict=False)

    # ── package operations ────────────────────────────────────────────────────

    def requirement(self, spec: PackageSpec) -> list[str]:
        """Requirement argv for ``spec``: ``[req]`` or ``["-e", source]``."""
        if spec.editable:
            if not spec.source:
                raise _invalid(f"editable install of {spec.name or '<unnamed>'} requires a source path or VCS URL")
            if spec.marker:
                raise _invalid(f"editable install of {spec.source} cannot carry a marker")
            return ["-e", spec.source]

        if spec.source:
            if spec.name and "://" in spec.source:
                name = validate_name(spec.name)
                if spec.extras:
                    name = format_requirement(spec.name, extras=spec.extras)
                if spec.marker:
                    # whitespace before ";" keeps it out of the URL
                    return [f"{name} @ {spec.source} ; {validate_marker(spec.marker)}"]
                return [f"{name} @ {spec.source}"]
            if spec.marker:
                raise _invalid(f"marker {spec.marker!r} needs a named requirement, not a bare source")
            return [spec.source]

        return [format_requirement(spec.name, spec.version, spec.extras, spec.marker)]

    def install(self, spec: PackageSpec, call: CallOptions = DEFAULT_CALL_OPTIONS) -> ExecutionRequest:
        requirement = self.requirement(spec)
        flags = option_args("install", spec.options)
        snapshot = self.state.snapshot()

        args = self._pip_prefix(snapshot) + ["install", *requirement]
        if spec.upgrade:
            args.append("--upgrade")
        if spec.force_reinstall:
            args.append("--force-reinstall")
        if spec.no_deps:
            args.append("--no-deps")
        if spec.user:
            args.append("--user")
        if spec.pre:
            args.append("--pre")
        args += self._network_args(call, spec.index_url)
        args += self._cache_args()
        args += self._extra("install")
        args += flags
        return self._request(args, "install", snapshot, call)

    def install_requirements(
        self,
        path: str | Path,
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        upgrade: bool = False,
        options: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRequest:
        path = Path(path)
        if not path.is_file():
            raise _invalid(f"requirements file not found: {path}")

        flags = option_args("install-requirements", options)
        snapshot = self.state.snapshot()
        args = self._pip_prefix(snapshot) + ["install", "-r", str(path)]
        if upgrade:
            args.append("--upgrade")
        args += self._network_args(call)
        args += self._cache_args()
        args += self._extra("install-requirements")
        args += flags
        return self._request(args, "install-requirements", snapshot, call)

    def uninstall(
        self,
        names: Sequence[str],
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        options: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRequest:
        if isinstance(names, str):
            names = [names]
        if not names:
            raise _invalid("at least one package name is required")
        validated = [validate_name(n) for n in names]
        flags = option_args("uninstall", options)

        snapshot = self.state.snapshot()
        args = self._pip_prefix(snapshot) + ["uninstall"]
        if not self.uv:
            args.append("-y")
        args += validated
        args += self._extra("uninstall")
        args += flags
        return self._request(args, "uninstall", snapshot, call)

    def list_packages(
        self,
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        options: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRequest:
        flags = option_args("list", options)
        snapshot = self.state.snapshot()
        args = self._pip_prefix(snapshot) + ["list", "--format=json"] + self._extra("list") + flags
        return self._request(args, "list", snapshot, call)

    def outdated(
        self,
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        options: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRequest:
        flags = option_args("outdated", options)
        snapshot = self.state.snapshot()
        args = self._pip_prefix(snapshot) + ["list", "--outdated", "--format=json"]
        args += self._network_args(call)
        args += self._cache_args()
        args += self._extra("outdated")
        args += flags
        return self._request(args, "outdated", snapshot, call)

    def show(
        self,
        names: Sequence[str] | str,
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        files: bool = False,
    ) -> ExecutionRequest:
        if isinstance(names, str):
            names = [names]
        if not names:
            raise _invalid("at least one package name is required")
        validated = [validate_name(n) for n in names]

        snapshot = self.state.snapshot()
        args = self._pip_prefix(snapshot) + ["show", *validated]
        if files:
            args.append("--files")
        args += self._extra("show")
        return self._request(args, "show", snapshot, call)

    def freeze(
        self,
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        options: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRequest:
        flags = option_args("freeze", options)
        snapshot = self.state.snapshot()
        args = self._pip_prefix(snapshot) + ["freeze"] + self._extra("freeze") + flags
        return self._request(args, "freeze", snapshot, call)

    def search(self, query: str, call: CallOptions = DEFAULT_CALL_OPTIONS) -> ExecutionRequest:
        query = (query or "").strip()
        if not query:
            raise _invalid("search query is required")
        if self.uv:
            raise PipError.of(ErrorKind.FEATURE_DISABLED, "search is not supported by the uv backend")

        snapshot = self.state.snapshot()
        args = self._pip_prefix(snapshot) + ["search", query] + self._extra("search")
        return self._request(args, "search", snapshot, call)

    # ── interpreter operations ────────────────────────────────────────────────

    def pip_version(self, call: CallOptions = DEFAULT_CALL_OPTIONS) -> ExecutionRequest:
        snapshot = self.state.snapshot()
        if self.uv:
            args = [str(self.locator.resolve(snapshot).python_path), "-m", "pip", "--version"]
        else:
            args = self.locator.pip_command(snapshot) + ["--version"]
        return self._request(args, "pip-version", snapshot, call, retries=0)

    def python_version(
        self,
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        python: str | Path | None = None,
    ) -> ExecutionRequest:
        snapshot = self.state.snapshot()
        exe = str(python) if python else str(self.locator.resolve(snapshot).python_path)
        return self._request([exe, "--version"], "python-version", snapshot, call, retries=0)

    def ensure_pip(self, call: CallOptions = DEFAULT_CALL_OPTIONS, *, upgrade: bool = True) -> ExecutionRequest:
        snapshot = self.state.snapshot()
        args = [str(self.locator.resolve(snapshot).python_path), "-m", "ensurepip"]
        if upgrade:
            args.append("--upgrade")
        return self._request(args, "ensure-pip", snapshot, call)

    def fetch_get_pip(
        self,
        dest: str | Path,
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        url: str = GET_PIP_URL,
    ) -> ExecutionRequest:
        """Download ``get-pip.py`` to ``dest`` with the target interpreter's urllib."""
        snapshot = self.state.snapshot()
        python = str(self.locator.resolve(snapshot).python_path)
        return self._request([python, "-c", _FETCH_SCRIPT, url, str(dest)], "fetch-get-pip", snapshot, call)

    def get_pip(self, script: str | Path, call: CallOptions = DEFAULT_CALL_OPTIONS) -> ExecutionRequest:
        snapshot = self.state.snapshot()
        python = str(self.locator.resolve(snapshot).python_path)
        return self._request([python, str(script)], "get-pip", snapshot, call)

    # ── venv ──────────────────────────────────────────────────────────────────

    def base_python(self, opts: VenvCreateOptions) -> Path:
        if opts.python:
            return resolve_python_executable(opts.python, search_path=self.locator.search_path)
        # the interpreter in effect outside any active venv
        return self.locator.resolve(self.state.snapshot().base()).python_path

    def venv_create(
        self,
        path: str | Path,
        opts: VenvCreateOptions = VenvCreateOptions(),
        call: CallOptions = DEFAULT_CALL_OPTIONS,
        *,
        tool: str = "venv",
    ) -> ExecutionRequest:
        """
        Command that creates a venv at ``path``.

        ``tool`` is ``"venv"`` (stdlib module), ``"virtualenv-module"``
        (``python -m virtualenv``), ``"virtualenv"`` (the standalone command)
        or ``"uv"``.
        """
        path = Path(path)
        if not str(path).strip():
            raise _invalid("venv path is required")

        snapshot = self.state.snapshot()
        python = str(self.base_python(opts))

        if tool == "venv":
            args = [python, "-m", "venv"]
            if opts.force:
                args.append("--clear")
            if opts.system_site_packages:
                args.append("--system-site-packages")
            if opts.without_pip:
                args.append("--without-pip")
            if opts.prompt:
                args += ["--prompt", opts.prompt]
            if opts.upgrade_deps and not opts.without_pip:
                args.append("--upgrade-deps")
            args.append(str(path))

        elif tool in ("virtualenv-module", "virtualenv"):
            if tool == "virtualenv-module":
                args = [python, "-m", "virtualenv"]
            else:
                args = ["virtualenv", "--python", python]
            if opts.force:
                args.append("--clear")
            if opts.system_site_packages:
                args.append("--system-site-packages")
            if opts.without_pip:
                args.append("--no-pip")
            if opts.prompt:
                args += ["--prompt", opts.prompt]
            args.append(str(path))

        elif tool == "uv":
            args = [str(find_uv_bin()), "venv", str(path), "--python", python]
            if not opts.without_pip:
                args.append("--seed")
            if opts.system_site_packages:
                args.append("--system-site-packages")
            if opts.prompt:
                args += ["--prompt", opts.prompt]

        else:
            raise _invalid(f"unknown venv tool: {tool!r}")

        # venv creation runs outside any active env
        base = VenvState()
        return self._request(args, "venv-create", base, call, retries=0)
