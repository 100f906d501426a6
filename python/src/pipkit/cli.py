"""
Command line interface.

    pipkit [global options] <command> [command options]

Every run is a fresh process, so ``venv activate`` validates the env and
prints the shell commands that apply its overlay; other commands take
``--venv PATH`` to run against a venv directly.

Exit status is 0 on success and 1 on any failure.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from . import __version__
from .environ.environment import PipManager
from .environ.pip_settings import BACKENDS, PipSettings
from .errors import ErrorKind, PipError, log_pip_error
from .pip.models import PackageSpec, VenvCreateOptions

__all__ = ["main", "build_parser"]

logger = logging.getLogger("pipkit.cli")

Handler = Callable[[PipManager, argparse.Namespace], int]


# ─────────────────────────────────────────────────────────────────────────────
# Output
# ─────────────────────────────────────────────────────────────────────────────

def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: _jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if f.name != "result"
        }
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _emit_json(value: Any) -> None:
    print(json.dumps(_jsonable(value), indent=2))


def _print_error(error: PipError) -> None:
    print(f"Error: [{error.kind.value}] {error.message}", file=sys.stderr)
    if error.command:
        print(f"Command: {error.command}", file=sys.stderr)
    if error.exit_code:
        print(f"Exit code: {error.exit_code}", file=sys.stderr)
    if error.suggestions:
        print("Suggestions:", file=sys.stderr)
        for s in error.suggestions:
            print(f"  - {s}", file=sys.stderr)


def _table(rows: Sequence[Sequence[str]], headers: Sequence[str]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    lines = [fmt.format(*headers), fmt.format(*("-" * w for w in widths))]
    lines += [fmt.format(*row) for row in rows]
    return "\n".join(line.rstrip() for line in lines)


# ─────────────────────────────────────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────────────────────────────────────

def cmd_install(pm: PipManager, args: argparse.Namespace) -> int:
    flags = dict(
        upgrade=args.upgrade,
        force_reinstall=args.force_reinstall,
        no_deps=args.no_deps,
        user=args.user,
        pre=args.pre,
    )
    specs = []
    for source in args.editable or []:
        specs.append(PackageSpec(name="", editable=True, source=source, **flags))
    for package in args.packages:
        specs.append(PackageSpec.parse(package, **flags))

    if not specs:
        raise PipError.of(ErrorKind.INVALID_ARGUMENT, "install requires at least one package or --editable path")

    results = [pm.install(spec) for spec in specs]
    if args.json:
        _emit_json(results)
        return 0

    for res in results:
        for name, version in res.installed:
            print(f"Installed {name} {version}")
        for name in res.already_satisfied:
            print(f"Already satisfied: {name}")
        if not res.installed and not res.already_satisfied:
            print(f"Processed {res.package}")
    return 0


def cmd_uninstall(pm: PipManager, args: argparse.Namespace) -> int:
    res = pm.uninstall(*args.names)
    if args.json:
        _emit_json(res)
        return 0
    for name, version in res.removed:
        print(f"Removed {name} {version}")
    for name in res.skipped:
        print(f"Not installed: {name}")
    return 0


def cmd_list(pm: PipManager, args: argparse.Namespace) -> int:
    if args.outdated:
        packages = pm.outdated()
        if args.json:
            _emit_json(packages)
        elif packages:
            rows = [(p.name, p.version, p.latest_version, p.latest_filetype) for p in packages]
            print(_table(rows, ("Package", "Version", "Latest", "Type")))
        else:
            print("All packages are up to date")
        return 0

    packages = pm.list_packages()
    if args.json:
        _emit_json(packages)
    else:
        rows = [(p.name, p.version, p.editable_location) for p in packages]
        print(_table(rows, ("Package", "Version", "Editable location")))
    return 0


def cmd_show(pm: PipManager, args: argparse.Namespace) -> int:
    info = pm.show(args.name, files=args.files)
    if args.json:
        _emit_json(info)
        return 0

    print(f"Name: {info.name}")
    print(f"Version: {info.version}")
    for label, value in (
        ("Summary", info.summary),
        ("Home-page", info.home_page),
        ("Author", info.author),
        ("Author-email", info.author_email),
        ("License", info.license),
        ("Location", info.location),
        ("Editable project location", info.editable_location),
    ):
        if value:
            print(f"{label}: {value}")
    print(f"Requires: {', '.join(info.requires)}")
    print(f"Required-by: {', '.join(info.required_by)}")
    if info.files:
        print("Files:")
        for f in info.files:
            print(f"  {f}")
    return 0


def cmd_freeze(pm: PipManager, args: argparse.Namespace) -> int:
    if args.output:
        packages = pm.generate_requirements(args.output)
        print(f"Wrote {len(packages)} requirements to {args.output}")
        return 0

    packages = pm.freeze()
    if args.json:
        _emit_json(packages)
    else:
        for p in packages:
            print(p.requirement or f"{p.name}=={p.version}")
    return 0


def cmd_search(pm: PipManager, args: argparse.Namespace) -> int:
    results = pm.search(args.query)
    if args.json:
        _emit_json(results)
        return 0
    for r in results:
        print(f"{r.name} ({r.version}) - {r.summary}")
    return 0


def cmd_requirements_install(pm: PipManager, args: argparse.Namespace) -> int:
    res = pm.install_requirements(args.file, upgrade=args.upgrade)
    if args.json:
        _emit_json(res)
        return 0
    for name, version in res.installed:
        print(f"Installed {name} {version}")
    print(f"Requirements from {args.file} installed")
    return 0


def cmd_requirements_generate(pm: PipManager, args: argparse.Namespace) -> int:
    packages = pm.generate_requirements(args.file)
    print(f"Wrote {len(packages)} requirements to {args.file}")
    return 0


def _activation_script(env: dict, unset: Sequence[str]) -> list[str]:
    if os.name == "nt":
        lines = [f'set "{k}={v}"' for k, v in env.items()]
        lines += [f'set "{k}="' for k in unset]
        return lines
    lines = [f"export {k}={shlex.quote(v)}" for k, v in env.items()]
    lines += [f"unset {k}" for k in unset]
    return lines


def cmd_venv_create(pm: PipManager, args: argparse.Namespace) -> int:
    opts = VenvCreateOptions(
        python=args.with_python or "",
        force=args.force,
        system_site_packages=args.system_site_packages,
        without_pip=args.without_pip,
        prompt=args.prompt or "",
        upgrade_deps=args.upgrade_deps,
    )
    info = pm.create_venv(args.path, opts)
    if args.json:
        _emit_json(info)
    else:
        print(f"Created virtual environment at {info.path}")
    return 0


def cmd_venv_activate(pm: PipManager, args: argparse.Namespace) -> int:
    state = pm.activate_venv(args.path)
    if args.json:
        _emit_json({"root": state.root, "python": state.python_path, "env": dict(state.env), "unset": state.env_unset})
        return 0
    for line in _activation_script(dict(state.env), state.env_unset):
        print(line)
    return 0


def cmd_venv_deactivate(pm: PipManager, args: argparse.Namespace) -> int:
    pm.deactivate_venv()
    if os.name == "nt":
        print('set "VIRTUAL_ENV="')
    else:
        print("unset VIRTUAL_ENV")
    return 0


def cmd_venv_remove(pm: PipManager, args: argparse.Namespace) -> int:
    pm.remove_venv(args.path)
    print(f"Removed virtual environment at {Path(args.path).absolute()}")
    return 0


def cmd_venv_info(pm: PipManager, args: argparse.Namespace) -> int:
    info = pm.venv_info(args.path)
    if args.json:
        _emit_json(info)
        return 0
    print(f"Path: {info.path}")
    print(f"Python: {info.python_path}")
    print(f"Python version: {info.python_version}")
    print(f"Pip: {info.pip_path or ''}")
    print(f"Active: {info.is_active}")
    if info.created_at is not None:
        print(f"Created: {info.created_at.isoformat(timespec='seconds')}")
    if info.home:
        print(f"Home: {info.home}")
    print(f"System site packages: {info.include_system_site_packages}")
    return 0


def cmd_venv_list(pm: PipManager, args: argparse.Namespace) -> int:
    infos = pm.list_venvs(args.directory)
    if args.json:
        _emit_json(infos)
        return 0
    if not infos:
        print(f"No virtual environments in {Path(args.directory).absolute()}")
        return 0
    rows = [(str(i.path.name), i.python_version, str(i.path)) for i in infos]
    print(_table(rows, ("Name", "Python", "Path")))
    return 0


_BOOTSTRAP_MESSAGES = {
    "present": "pip is already installed",
    "ensurepip": "Installed pip with ensurepip",
    "get-pip": "Installed pip with get-pip.py",
}


def cmd_bootstrap(pm: PipManager, args: argparse.Namespace) -> int:
    method = pm.install_pip()
    if args.json:
        _emit_json({"method": method})
    else:
        print(_BOOTSTRAP_MESSAGES[method])
    return 0


def cmd_version(pm: PipManager, args: argparse.Namespace) -> int:
    print(f"pipkit {__version__}")
    pip = pm.pip_version()
    print(f"pip {pip.version} (python {pip.python_version})")
    print(f"Python {pm.python_version()}")
    return 0


# ─────────────────────────────────────────────────────────────────────────────
# Parser
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipkit",
        description="Drive pip and virtual environments from one tool.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pipkit install "requests>=2.31"
  pipkit --venv .venv list --outdated
  pipkit freeze --output requirements.txt
  pipkit venv create .venv --upgrade-deps
  eval "$(pipkit venv activate .venv)"
        """,
    )
    parser.add_argument("--timeout", type=float, help="Per-command timeout in seconds (0 disables it)")
    parser.add_argument("--retries", type=int, help="Retries for network errors and timeouts")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log commands and their output")
    parser.add_argument("--python", metavar="PYTHON", help="Interpreter path or selector such as 3.12")
    parser.add_argument("--pip", metavar="PIP", help="pip executable to use")
    parser.add_argument("--index-url", metavar="URL", help="Base URL of the package index")
    parser.add_argument("--backend", choices=BACKENDS, help="pip (default) or uv")
    parser.add_argument("--venv", metavar="PATH", help="Activate this venv before running the command")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")

    sub = parser.add_subparsers(dest="command", metavar="<command>")
    commands: dict[str, argparse.ArgumentParser] = {}
    parser.set_defaults(commands=commands)

    def add(name: str, handler: Handler, help_: str, target=sub) -> argparse.ArgumentParser:
        p = target.add_parser(name, help=help_, description=help_)
        if handler is not None:
            p.set_defaults(handler=handler)
        if target is sub:
            commands[name] = p
        return p

    p = add("install", cmd_install, "Install packages")
    p.add_argument("packages", nargs="*", metavar="PACKAGE", help="Requirement such as name, name==1.0, name[extra]>=1")
    p.add_argument("-e", "--editable", action="append", metavar="PATH", help="Install a local project or VCS URL in editable mode")
    p.add_argument("-U", "--upgrade", action="store_true", help="Upgrade to the newest allowed version")
    p.add_argument("--force-reinstall", action="store_true", help="Reinstall even when up to date")
    p.add_argument("--no-deps", action="store_true", help="Do not install dependencies")
    p.add_argument("--user", action="store_true", help="Install to the user site")
    p.add_argument("--pre", action="store_true", help="Allow pre-release versions")

    p = add("uninstall", cmd_uninstall, "Uninstall packages")
    p.add_argument("names", nargs="+", metavar="NAME")

    p = add("list", cmd_list, "List installed packages")
    p.add_argument("--outdated", action="store_true", help="Only packages with a newer release")

    p = add("show", cmd_show, "Show package details")
    p.add_argument("name", metavar="NAME")
    p.add_argument("--files", action="store_true", help="Include installed files")

    p = add("freeze", cmd_freeze, "Print installed packages in requirements format")
    p.add_argument("-o", "--output", metavar="FILE", help="Write to FILE instead of stdout")

    p = add("search", cmd_search, "Search the package index (disabled on PyPI)")
    p.add_argument("query", metavar="QUERY")

    req = add("requirements", None, "Install or generate requirements files")
    req_sub = req.add_subparsers(dest="requirements_command", metavar="<action>", required=True)
    p = add("install", cmd_requirements_install, "Install from a requirements file", target=req_sub)
    p.add_argument("file", nargs="?", default="requirements.txt", metavar="FILE")
    p.add_argument("-U", "--upgrade", action="store_true")
    p = add("generate", cmd_requirements_generate, "Write installed packages to a requirements file", target=req_sub)
    p.add_argument("file", nargs="?", default="requirements.txt", metavar="FILE")

    venv = add("venv", None, "Manage virtual environments")
    venv_sub = venv.add_subparsers(dest="venv_command", metavar="<action>", required=True)
    p = add("create", cmd_venv_create, "Create a virtual environment", target=venv_sub)
    p.add_argument("path", metavar="PATH")
    p.add_argument("--with-python", metavar="PYTHON", help="Base interpreter for the new env")
    p.add_argument("--force", action="store_true", help="Recreate when it already exists")
    p.add_argument("--system-site-packages", action="store_true")
    p.add_argument("--without-pip", action="store_true")
    p.add_argument("--prompt", metavar="PROMPT")
    p.add_argument("--upgrade-deps", action="store_true", help="Upgrade pip and setuptools after creation")
    p = add("activate", cmd_venv_activate, "Validate a venv and print its activation commands", target=venv_sub)
    p.add_argument("path", metavar="PATH")
    add("deactivate", cmd_venv_deactivate, "Print the deactivation commands", target=venv_sub)
    p = add("remove", cmd_venv_remove, "Delete a virtual environment", target=venv_sub)
    p.add_argument("path", metavar="PATH")
    p = add("info", cmd_venv_info, "Describe a virtual environment", target=venv_sub)
    p.add_argument("path", metavar="PATH")
    p = add("list", cmd_venv_list, "List virtual environments in a directory", target=venv_sub)
    p.add_argument("directory", nargs="?", default=".", metavar="DIR")

    add("bootstrap", cmd_bootstrap, "Install pip into the target interpreter when it is missing")
    add("version", cmd_version, "Show pipkit, pip and Python versions")

    p = sub.add_parser("help", help="Show help for a command")
    p.add_argument("topic", nargs="?", metavar="COMMAND")
    return parser


def settings_from_args(args: argparse.Namespace, env: Optional[dict] = None) -> PipSettings:
    return PipSettings.from_env(
        env,
        python_path=args.python,
        pip_path=args.pip,
        index_url=args.index_url,
        backend=args.backend,
        timeout=args.timeout,
        retries=args.retries,
    )


def _print_help(parser: argparse.ArgumentParser, topic: Optional[str]) -> int:
    if topic:
        commands = parser.get_default("commands") or {}
        if topic not in commands:
            print(f"Unknown command: {topic}", file=sys.stderr)
            parser.print_help(sys.stderr)
            return 1
        commands[topic].print_help()
        return 0
    parser.print_help()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command in (None, "help"):
        return _print_help(parser, getattr(args, "topic", None))

    try:
        pm = PipManager(settings_from_args(args))
        if args.venv:
            pm.activate_venv(args.venv)
        return args.handler(pm, args)
    except PipError as e:
        log_pip_error(e, args.command, logger)
        _print_error(e)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
