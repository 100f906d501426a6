"""
parsers.py: turn pip's free-form output into typed records.

pip prints the same information in several shapes depending on its version
and flags.  Parsers are registered per ``(OutputKind, OutputFormat)`` and
:func:`detect_format` picks the variant for a given raw text, so supporting
a new shape means registering one more function.

Parsers never look at exit codes and never raise on odd input: records
missing their name are dropped with a warning, which is logged and, when a
``warnings`` list is passed, appended to it.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import (
    InstallResult,
    InstalledPackage,
    OutdatedPackage,
    PackageInfo,
    PipVersion,
    SearchResult,
    UninstallResult,
)

__all__ = [
    "OutputKind",
    "OutputFormat",
    "register",
    "detect_format",
    "parse",
    "parse_list",
    "parse_outdated",
    "parse_show",
    "parse_freeze",
    "format_freeze",
    "parse_search",
    "parse_install",
    "parse_uninstall",
    "parse_pip_version",
    "parse_python_version",
    "parse_pyvenv_cfg",
]

logger = logging.getLogger(__name__)

Warnings = Optional[List[str]]
Parser = Callable[[str, Warnings], Any]


class OutputKind(str, Enum):
    LIST = "list"
    OUTDATED = "outdated"
    SHOW = "show"
    FREEZE = "freeze"
    SEARCH = "search"
    INSTALL = "install"
    UNINSTALL = "uninstall"
    PIP_VERSION = "pip-version"
    PYTHON_VERSION = "python-version"
    PYVENV_CFG = "pyvenv-cfg"


class OutputFormat(str, Enum):
    JSON = "json"
    COLUMNS = "columns"
    PLAIN = "plain"
    LEGACY = "legacy"
    TEXT = "text"


_PARSERS: Dict[Tuple[OutputKind, OutputFormat], Parser] = {}


def register(kind: OutputKind, fmt: OutputFormat) -> Callable[[Parser], Parser]:
    def deco(func: Parser) -> Parser:
        _PARSERS[(kind, fmt)] = func
        return func

    return deco


def _warn(warnings: Warnings, message: str, *args: Any) -> None:
    logger.warning(message, *args)
    if warnings is not None:
        warnings.append(message % args if args else message)


# ─────────────────────────────────────────────────────────────────────────────
# Format detection
# ─────────────────────────────────────────────────────────────────────────────

_DASH_LINE_RE = re.compile(r"^\s*-{2,}(?:\s+-{2,})*\s*$")
_LEGACY_LIST_RE = re.compile(r"^(?P<name>[A-Za-z0-9][A-Za-z0-9._-]*)\s+\((?P<body>[^)]*)\)\s*(?P<rest>.*)$")
_NOISE_PREFIXES = ("WARNING:", "DEPRECATION:", "[notice]", "ERROR:", "Note:")


def _lines(raw: str) -> List[str]:
    return (raw or "").replace("\r\n", "\n").replace("\r", "\n").split("\n")


def _is_noise(line: str) -> bool:
    return line.lstrip().startswith(_NOISE_PREFIXES)


def detect_format(kind: OutputKind, raw: str) -> OutputFormat:
    kind = OutputKind(kind)
    if kind not in (OutputKind.LIST, OutputKind.OUTDATED):
        return OutputFormat.LEGACY if kind == OutputKind.SEARCH else OutputFormat.TEXT

    lines = [l for l in _lines(raw) if l.strip() and not _is_noise(l)]
    text = "\n".join(lines).strip()
    if text.startswith("[") or text.startswith("{"):
        return OutputFormat.JSON

    if any(_DASH_LINE_RE.match(l) for l in lines):
        return OutputFormat.COLUMNS
    if lines and all(_LEGACY_LIST_RE.match(l.strip()) for l in lines):
        return OutputFormat.LEGACY
    return OutputFormat.PLAIN


def parse(kind: OutputKind, raw: str, *, warnings: Warnings = None, fmt: Optional[OutputFormat] = None) -> Any:
    kind = OutputKind(kind)
    fmt = detect_format(kind, raw) if fmt is None else OutputFormat(fmt)
    parser = _PARSERS.get((kind, fmt))
    if parser is None:
        raise KeyError(f"no parser registered for {kind.value}/{fmt.value}")
    return parser(raw, warnings)


# ─────────────────────────────────────────────────────────────────────────────
# list / outdated
# ─────────────────────────────────────────────────────────────────────────────

_COLUMN_FIELDS = {
    "package": "name",
    "name": "name",
    "version": "version",
    "latest": "latest_version",
    "type": "latest_filetype",
    "location": "location",
    "editable project location": "editable_location",
    "installer": "installer",
}

_JSON_FIELDS = {
    "name": "name",
    "version": "version",
    "location": "location",
    "editable_project_location": "editable_location",
    "installer": "installer",
    "latest_version": "latest_version",
    "latest_filetype": "latest_filetype",
}


def _row_to_record(row: Dict[str, str], outdated: bool, warnings: Warnings, source: str):
    name = (row.get("name") or "").strip()
    if not name:
        _warn(warnings, "dropping %s record without a name: %r", source, row)
        return None

    if outdated:
        return OutdatedPackage(
            name=name,
            version=row.get("version", "") or "",
            latest_version=row.get("latest_version", "") or "",
            latest_filetype=row.get("latest_filetype", "") or "",
        )

    editable_location = row.get("editable_location", "") or ""
    return InstalledPackage(
        name=name,
        version=row.get("version", "") or "",
        location=row.get("location", "") or "",
        editable=bool(editable_location),
        editable_location=editable_location,
        installer=row.get("installer", "") or "",
    )


def _json_rows(raw: str, warnings: Warnings) -> Optional[List[Dict[str, str]]]:
    text = "\n".join(l for l in _lines(raw) if not _is_noise(l)).strip()
    start, end = text.find("["), text.rfind("]")
    if start < 0 or end < start:
        _warn(warnings, "expected a JSON array, got %r", text[:80])
        return None
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        _warn(warnings, "invalid JSON package list: %s", e)
        return None

    rows: List[Dict[str, str]] = []
    for item in data:
        if not isinstance(item, dict):
            _warn(warnings, "dropping non-object JSON entry: %r", item)
            continue
        row = {}
        for key, value in item.items():
            field_name = _JSON_FIELDS.get(str(key).lower())
            if field_name and value is not None:
                row[field_name] = str(value)
        rows.append(row)
    return rows


def _column_spans(dash_line: str) -> List[Tuple[int, Optional[int]]]:
    spans = [(m.start(), m.end()) for m in re.finditer(r"-+", dash_line)]
    out: List[Tuple[int, Optional[int]]] = []
    for i, (start, _end) in enumerate(spans):
        nxt = spans[i + 1][0] if i + 1 < len(spans) else None
        out.append((start, nxt))
    return out


def _column_rows(raw: str, warnings: Warnings) -> List[Dict[str, str]]:
    lines = [l for l in _lines(raw) if l.strip() and not _is_noise(l)]
    dash_idx = next((i for i, l in enumerate(lines) if _DASH_LINE_RE.match(l)), None)
    if dash_idx is None or dash_idx == 0:
        _warn(warnings, "column table without a header line")
        return []

    spans = _column_spans(lines[dash_idx])
    header = lines[dash_idx - 1]
    fields = []
    for start, end in spans:
        label = re.sub(r"\s+", " ", header[start:end].strip().lower())
        fields.append(_COLUMN_FIELDS.get(label))

    rows = []
    for line in lines[dash_idx + 1:]:
        row: Dict[str, str] = {}
        for (start, end), field_name in zip(spans, fields):
            if field_name is None:
                continue
            row[field_name] = line[start:end].strip() if end is not None else line[start:].strip()
        rows.append(row)
    return rows


def _plain_rows(raw: str) -> List[Dict[str, str]]:
    rows = []
    for line in _lines(raw):
        if not line.strip() or _is_noise(line):
            continue
        parts = line.split(None, 2)
        row = {"name": parts[0], "version": parts[1] if len(parts) > 1 else ""}
        if len(parts) > 2:
            row["location"] = parts[2].strip()
        rows.append(row)
    return rows


_LEGACY_OUTDATED_RE = re.compile(
    r"Current:\s*(?P<version>\S+)\s+Latest:\s*(?P<latest>\S+)(?:\s*\[(?P<type>[^\]]+)\])?",
)


def _legacy_rows(raw: str) -> List[Dict[str, str]]:
    rows = []
    for line in _lines(raw):
        line = line.strip()
        if not line or _is_noise(line):
            continue
        m = _LEGACY_LIST_RE.match(line)
        if not m:
            continue
        body = m.group("body")
        outdated = _LEGACY_OUTDATED_RE.search(body + " " + m.group("rest"))
        if outdated:
            rows.append({
                "name": m.group("name"),
                "version": outdated.group("version"),
                "latest_version": outdated.group("latest"),
                "latest_filetype": outdated.group("type") or "",
            })
            continue

        version, _, location = body.partition(",")
        row = {"name": m.group("name"), "version": version.strip()}
        if location.strip():
            row["editable_location"] = location.strip()
        rows.append(row)
    return rows


def _records(rows: Optional[List[Dict[str, str]]], outdated: bool, warnings: Warnings, source: str) -> list:
    out = []
    for row in rows or []:
        rec = _row_to_record(row, outdated, warnings, source)
        if rec is not None:
            out.append(rec)
    return out


@register(OutputKind.LIST, OutputFormat.JSON)
def _list_json(raw: str, warnings: Warnings) -> List[InstalledPackage]:
    return _records(_json_rows(raw, warnings), False, warnings, "list")


@register(OutputKind.LIST, OutputFormat.COLUMNS)
def _list_columns(raw: str, warnings: Warnings) -> List[InstalledPackage]:
    return _records(_column_rows(raw, warnings), False, warnings, "list")


@register(OutputKind.LIST, OutputFormat.PLAIN)
def _list_plain(raw: str, warnings: Warnings) -> List[InstalledPackage]:
    return _records(_plain_rows(raw), False, warnings, "list")


@register(OutputKind.LIST, OutputFormat.LEGACY)
def _list_legacy(raw: str, warnings: Warnings) -> List[InstalledPackage]:
    return _records(_legacy_rows(raw), False, warnings, "list")


@register(OutputKind.OUTDATED, OutputFormat.JSON)
def _outdated_json(raw: str, warnings: Warnings) -> List[OutdatedPackage]:
    return _records(_json_rows(raw, warnings), True, warnings, "outdated")


@register(OutputKind.OUTDATED, OutputFormat.COLUMNS)
def _outdated_columns(raw: str, warnings: Warnings) -> List[OutdatedPackage]:
    return _records(_column_rows(raw, warnings), True, warnings, "outdated")


@register(OutputKind.OUTDATED, OutputFormat.PLAIN)
def _outdated_plain(raw: str, warnings: Warnings) -> List[OutdatedPackage]:
    rows = []
    for line in _lines(raw):
        if not line.strip() or _is_noise(line):
            continue
        parts = line.split()
        rows.append({
            "name": parts[0],
            "version": parts[1] if len(parts) > 1 else "",
            "latest_version": parts[2] if len(parts) > 2 else "",
            "latest_filetype": parts[3] if len(parts) > 3 else "",
        })
    return _records(rows, True, warnings, "outdated")


@register(OutputKind.OUTDATED, OutputFormat.LEGACY)
def _outdated_legacy(raw: str, warnings: Warnings) -> List[OutdatedPackage]:
    return _records(_legacy_rows(raw), True, warnings, "outdated")


def parse_list(raw: str, *, warnings: Warnings = None) -> List[InstalledPackage]:
    return parse(OutputKind.LIST, raw, warnings=warnings)


def parse_outdated(raw: str, *, warnings: Warnings = None) -> List[OutdatedPackage]:
    return parse(OutputKind.OUTDATED, raw, warnings=warnings)


# ─────────────────────────────────────────────────────────────────────────────
# show
# ─────────────────────────────────────────────────────────────────────────────

_SHOW_FIELDS = {
    "name": "name",
    "version": "version",
    "summary": "summary",
    "home-page": "home_page",
    "author": "author",
    "author-email": "author_email",
    "license": "license",
    "location": "location",
    "editable project location": "editable_location",
}
_SHOW_KEY_RE = re.compile(r"^(?P<key>[A-Za-z][A-Za-z0-9 _-]*):(?:\s(?P<value>.*)|$)")


def _split_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _show_record(pairs: List[Tuple[str, str]], warnings: Warnings) -> Optional[PackageInfo]:
    values: Dict[str, Any] = {}
    metadata: Dict[str, str] = {}
    requires: List[str] = []
    required_by: List[str] = []
    files: List[str] = []

    for key, value in pairs:
        lk = key.strip().lower()
        if lk in _SHOW_FIELDS:
            values[_SHOW_FIELDS[lk]] = value.strip()
        elif lk == "requires":
            requires = _split_list(value)
        elif lk == "required-by":
            required_by = _split_list(value)
        elif lk == "files":
            files = [f.strip() for f in value.split("\n") if f.strip()]
        else:
            metadata[key.strip()] = value.strip()

    if not values.get("name"):
        if pairs:
            _warn(warnings, "dropping show record without a name: %r", dict(pairs))
        return None

    return PackageInfo(
        requires=requires,
        required_by=required_by,
        files=files,
        metadata=metadata,
        **values,
    )


@register(OutputKind.SHOW, OutputFormat.TEXT)
def _show_text(raw: str, warnings: Warnings) -> List[PackageInfo]:
    records: List[PackageInfo] = []
    pairs: List[Tuple[str, str]] = []
    key: Optional[str] = None
    value_lines: List[str] = []

    def flush_pair():
        nonlocal key, value_lines
        if key is not None:
            pairs.append((key, "\n".join(value_lines).strip()))
        key, value_lines = None, []

    def flush_record():
        nonlocal pairs
        flush_pair()
        rec = _show_record(pairs, warnings)
        if rec is not None:
            records.append(rec)
        pairs = []

    for line in _lines(raw):
        if line.strip() == "---":
            flush_record()
            continue
        if not line.strip():
            continue
        if line[:1].isspace():
            if key is not None:
                value_lines.append(line.strip())
            continue
        if _is_noise(line):
            continue

        m = _SHOW_KEY_RE.match(line)
        if m:
            flush_pair()
            key = m.group("key")
            value_lines = [(m.group("value") or "").strip()]
        elif key is not None:
            value_lines.append(line.strip())

    flush_record()
    return records


def parse_show(raw: str, *, warnings: Warnings = None) -> List[PackageInfo]:
    return parse(OutputKind.SHOW, raw, warnings=warnings)


# ─────────────────────────────────────────────────────────────────────────────
# freeze
# ─────────────────────────────────────────────────────────────────────────────

_FREEZE_NAME_RE = re.compile(r"^(?P<name>[A-Za-z0-9][A-Za-z0-9._-]*)(?:\[[^\]]*\])?\s*(?P<rest>.*)$")


def _editable_name(target: str) -> str:
    if "#egg=" in target:
        return target.split("#egg=", 1)[1].split("&", 1)[0].strip()
    stripped = target.rstrip("/\\")
    parts = re.split(r"[/\\]", stripped)
    return parts[-1].strip() if parts else ""


@register(OutputKind.FREEZE, OutputFormat.TEXT)
def _freeze_text(raw: str, warnings: Warnings) -> List[InstalledPackage]:
    packages: List[InstalledPackage] = []

    for raw_line in _lines(raw):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith(("-e ", "--editable ")):
            target = line.split(None, 1)[1].strip() if " " in line else ""
            name = _editable_name(target)
            if not name:
                _warn(warnings, "dropping editable freeze entry without a name: %r", line)
                continue
            packages.append(InstalledPackage(
                name=name,
                editable=True,
                editable_location=target,
                requirement=line,
            ))
            continue

        if line.startswith("-"):
            continue

        m = _FREEZE_NAME_RE.match(line)
        if not m:
            _warn(warnings, "dropping unparseable freeze entry: %r", line)
            continue

        name = m.group("name")
        rest = m.group("rest").split(";", 1)[0].strip()
        version = ""
        location = ""
        if rest.startswith("==="):
            version = rest[3:].strip()
        elif rest.startswith("=="):
            version = rest[2:].strip()
        elif rest.startswith("@"):
            location = rest[1:].strip()

        packages.append(InstalledPackage(
            name=name,
            version=version,
            location=location,
            requirement=line,
        ))

    return packages


def parse_freeze(raw: str, *, warnings: Warnings = None) -> List[InstalledPackage]:
    return parse(OutputKind.FREEZE, raw, warnings=warnings)


def format_freeze(packages: List[InstalledPackage]) -> str:
    """Requirements-file text for parsed freeze entries, one per line."""
    lines = []
    for pkg in packages:
        if pkg.requirement:
            lines.append(pkg.requirement)
        elif pkg.version:
            lines.append(f"{pkg.name}=={pkg.version}")
        else:
            lines.append(pkg.name)
    return "\n".join(lines) + ("\n" if lines else "")


# ─────────────────────────────────────────────────────────────────────────────
# search
# ─────────────────────────────────────────────────────────────────────────────

_SEARCH_HEAD_RE = re.compile(
    r"^(?P<name>[A-Za-z0-9][A-Za-z0-9._-]*)\s+\((?P<version>[^)]*)\)\s*(?:-\s*(?P<summary>.*))?$"
)
_SEARCH_META_RE = re.compile(r"^(?P<key>INSTALLED|LATEST):\s*(?P<value>\S+)")


@register(OutputKind.SEARCH, OutputFormat.LEGACY)
def _search_legacy(raw: str, warnings: Warnings) -> List[SearchResult]:
    results: List[SearchResult] = []
    current: Optional[SearchResult] = None

    for line in _lines(raw):
        if not line.strip() or _is_noise(line):
            continue

        if not line[:1].isspace():
            m = _SEARCH_HEAD_RE.match(line.strip())
            if m:
                current = SearchResult(
                    name=m.group("name"),
                    version=m.group("version").strip(),
                    summary=(m.group("summary") or "").strip(),
                )
                results.append(current)
            else:
                _warn(warnings, "dropping search line without a name: %r", line.strip())
                current = None
            continue

        if current is None:
            continue

        stripped = line.strip()
        meta = _SEARCH_META_RE.match(stripped)
        if meta:
            if meta.group("key") == "INSTALLED":
                current.installed = meta.group("value")
            else:
                current.latest = meta.group("value")
        else:
            current.summary = f"{current.summary} {stripped}".strip()

    return results


def parse_search(raw: str, *, warnings: Warnings = None) -> List[SearchResult]:
    return parse(OutputKind.SEARCH, raw, warnings=warnings)


# ─────────────────────────────────────────────────────────────────────────────
# install / uninstall
# ─────────────────────────────────────────────────────────────────────────────

_ALREADY_RE = re.compile(r"^Requirement already (?:satisfied|up-to-date):\s*(?P<name>[A-Za-z0-9][A-Za-z0-9._-]*)")
_UV_CHANGE_RE = re.compile(r"^\s*(?P<sign>[+-])\s+(?P<name>[A-Za-z0-9][A-Za-z0-9._-]*)(?:==(?P<version>\S+))?")


def _name_version_pairs(tokens: List[str], warnings: Warnings) -> List[Tuple[str, str]]:
    pairs = []
    for token in tokens:
        name, sep, version = token.rpartition("-")
        if not sep or not name:
            _warn(warnings, "cannot split name and version from %r", token)
            continue
        pairs.append((name, version))
    return pairs


@register(OutputKind.INSTALL, OutputFormat.TEXT)
def _install_text(raw: str, warnings: Warnings) -> InstallResult:
    result = InstallResult(package="")
    seen_already = set()

    for line in _lines(raw):
        stripped = line.strip()

        if stripped.startswith("Successfully installed "):
            result.installed.extend(_name_version_pairs(stripped.split()[2:], warnings))
            continue

        m = _ALREADY_RE.match(stripped)
        if m:
            name = m.group("name")
            if name.lower() not in seen_already:
                seen_already.add(name.lower())
                result.already_satisfied.append(name)
            continue

        m = _UV_CHANGE_RE.match(line)
        if m and m.group("sign") == "+" and m.group("version"):
            result.installed.append((m.group("name"), m.group("version")))

    return result


_SKIPPING_RE = re.compile(r"Skipping (?P<name>\S+) as it is not installed")


@register(OutputKind.UNINSTALL, OutputFormat.TEXT)
def _uninstall_text(raw: str, warnings: Warnings) -> UninstallResult:
    result = UninstallResult(names=[])

    for line in _lines(raw):
        stripped = line.strip()

        if stripped.startswith("Successfully uninstalled "):
            result.removed.extend(_name_version_pairs(stripped.split()[2:], warnings))
            continue

        m = _SKIPPING_RE.search(stripped)
        if m:
            result.skipped.append(m.group("name").rstrip("."))
            continue

        m = _UV_CHANGE_RE.match(line)
        if m and m.group("sign") == "-" and m.group("version"):
            result.removed.append((m.group("name"), m.group("version")))

    return result


def parse_install(raw: str, *, warnings: Warnings = None) -> InstallResult:
    return parse(OutputKind.INSTALL, raw, warnings=warnings)


def parse_uninstall(raw: str, *, warnings: Warnings = None) -> UninstallResult:
    return parse(OutputKind.UNINSTALL, raw, warnings=warnings)


# ─────────────────────────────────────────────────────────────────────────────
# versions / pyvenv.cfg
# ─────────────────────────────────────────────────────────────────────────────

_PIP_VERSION_RE = re.compile(
    r"^pip\s+(?P<version>\S+)(?:\s+from\s+(?P<location>.+?))?(?:\s+\(python\s+(?P<python>[^)]+)\))?\s*$",
    re.MULTILINE,
)
_PYTHON_VERSION_RE = re.compile(r"^Python\s+(?P<version>\d+\.\d+(?:\.\d+)?\S*)", re.MULTILINE)


@register(OutputKind.PIP_VERSION, OutputFormat.TEXT)
def _pip_version_text(raw: str, warnings: Warnings) -> Optional[PipVersion]:
    m = _PIP_VERSION_RE.search(raw or "")
    if not m:
        _warn(warnings, "unrecognised pip --version output: %r", (raw or "").strip()[:120])
        return None
    return PipVersion(
        version=m.group("version"),
        location=(m.group("location") or "").strip(),
        python_version=(m.group("python") or "").strip(),
    )


@register(OutputKind.PYTHON_VERSION, OutputFormat.TEXT)
def _python_version_text(raw: str, warnings: Warnings) -> str:
    m = _PYTHON_VERSION_RE.search(raw or "")
    if not m:
        _warn(warnings, "unrecognised python --version output: %r", (raw or "").strip()[:120])
        return ""
    return m.group("version")


@register(OutputKind.PYVENV_CFG, OutputFormat.TEXT)
def _pyvenv_cfg_text(raw: str, warnings: Warnings) -> Dict[str, str]:
    config: Dict[str, str] = {}
    for line in _lines(raw):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            _warn(warnings, "ignoring pyvenv.cfg line without '=': %r", line)
            continue
        config[key.strip().lower()] = value.strip()
    return config


def parse_pip_version(raw: str, *, warnings: Warnings = None) -> Optional[PipVersion]:
    return parse(OutputKind.PIP_VERSION, raw, warnings=warnings)


def parse_python_version(raw: str, *, warnings: Warnings = None) -> str:
    return parse(OutputKind.PYTHON_VERSION, raw, warnings=warnings)


def parse_pyvenv_cfg(raw: str, *, warnings: Warnings = None) -> Dict[str, str]:
    return parse(OutputKind.PYVENV_CFG, raw, warnings=warnings)
