"""Typed records produced by pip operations."""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional

from ..errors import ErrorKind, PipError

if TYPE_CHECKING:
    from ..environ.system_command import ExecutionResult

__all__ = [
    "PackageSpec",
    "InstalledPackage",
    "PackageInfo",
    "SearchResult",
    "OutdatedPackage",
    "InstallResult",
    "UninstallResult",
    "PipVersion",
    "VenvInfo",
    "VenvCreateOptions",
]


@dataclass(frozen=True)
class PackageSpec:
    """
    Structured description of one package to install.

    Parameters
    ----------
    name:
        Distribution name, validated against the PEP 508 name grammar.
    version:
        Free-form pip constraint (``">=1.0,<2.0"``, ``"~=1.4"``).  A bare
        version such as ``"1.0"`` is treated as ``"==1.0"``.
    extras:
        Optional extras; serialised sorted.
    marker:
        PEP 508 environment marker (``python_version < "3.11"``) kept on
        the rendered requirement so pip evaluates it.
    source:
        Local path or VCS URL.  Required when ``editable`` is set, and used
        in place of the name-based requirement otherwise.
    options:
        Extra pip options validated against the install allow-list,
        e.g. ``{"no-cache-dir": True, "target": "/opt/lib"}``.
    """

    name: str
    version: str = ""
    extras: frozenset[str] = frozenset()
    index_url: str = ""
    editable: bool = False
    upgrade: bool = False
    force_reinstall: bool = False
    no_deps: bool = False
    user: bool = False
    pre: bool = False
    source: str = ""
    marker: str = ""
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.extras, frozenset):
            object.__setattr__(self, "extras", frozenset(self.extras or ()))

    @classmethod
    def parse(cls, value: "str | PackageSpec", **kwargs: Any) -> "PackageSpec":
        """
        Accept ``"name"``, ``"name==1.0"``, ``"name[extra]>=1; marker"`` or a spec.

        ``version``, ``extras`` and ``marker`` keywords merge with what the
        text already carries: extras are unioned, while a version or marker
        given both ways must agree or ``invalid_argument`` is raised.  The
        split is purely lexical; the builder validates the pieces.
        """
        version = kwargs.pop("version", "") or ""
        extras = frozenset(kwargs.pop("extras", None) or ())
        marker = kwargs.pop("marker", "") or ""

        if isinstance(value, PackageSpec):
            if not (version or extras or marker or kwargs):
                return value
            return dc.replace(
                value,
                version=_agree(value.name, "version", value.version, version),
                extras=value.extras | extras,
                marker=_agree(value.name, "marker", value.marker, marker),
                **kwargs,
            )

        from packaging.requirements import InvalidRequirement, Requirement

        text = str(value).strip()
        try:
            req = Requirement(text)
        except InvalidRequirement:
            # Leave it to the builder to reject with a classified error.
            return cls(name=text, version=version, extras=extras, marker=marker, **kwargs)

        if req.url:
            kwargs.setdefault("source", req.url)
        return cls(
            name=req.name,
            version=_agree(req.name, "version", str(req.specifier), version),
            extras=frozenset(req.extras) | extras,
            marker=_agree(req.name, "marker", str(req.marker) if req.marker else "", marker),
            **kwargs,
        )


def _agree(name: str, label: str, parsed: str, given: str) -> str:
    parsed, given = parsed.strip(), given.strip()
    if parsed and given and parsed != given:
        raise PipError.of(
            ErrorKind.INVALID_ARGUMENT,
            f"{name}: {label} given twice ({parsed!r} in the requirement, {given!r} as an argument)",
            context={"package": name},
        )
    return parsed or given


@dataclass
class InstalledPackage:
    name: str
    version: str = ""
    location: str = ""
    editable: bool = False
    editable_location: str = ""
    installer: str = ""
    requirement: str = ""


@dataclass
class PackageInfo:
    name: str
    version: str = ""
    summary: str = ""
    home_page: str = ""
    author: str = ""
    author_email: str = ""
    license: str = ""
    location: str = ""
    editable_location: str = ""
    requires: list[str] = field(default_factory=list)
    required_by: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class SearchResult:
    name: str
    version: str = ""
    summary: str = ""
    installed: str = ""
    latest: str = ""


@dataclass
class OutdatedPackage:
    name: str
    version: str = ""
    latest_version: str = ""
    latest_filetype: str = ""


@dataclass
class InstallResult:
    package: str
    installed: list[tuple[str, str]] = field(default_factory=list)
    already_satisfied: list[str] = field(default_factory=list)
    result: Optional["ExecutionResult"] = field(default=None, repr=False)


@dataclass
class UninstallResult:
    names: list[str]
    removed: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    result: Optional["ExecutionResult"] = field(default=None, repr=False)


@dataclass(frozen=True)
class PipVersion:
    version: str
    location: str = ""
    python_version: str = ""


@dataclass
class VenvInfo:
    path: Path
    python_path: Path
    pip_path: Optional[Path] = None
    is_active: bool = False
    created_at: Optional[dt.datetime] = None
    python_version: str = ""
    home: str = ""
    include_system_site_packages: bool = False
    prompt: str = ""
    config: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VenvCreateOptions:
    """Flags for ``venv create``; ``python`` selects the base interpreter."""

    python: str = ""
    force: bool = False
    system_site_packages: bool = False
    without_pip: bool = False
    prompt: str = ""
    upgrade_deps: bool = False
