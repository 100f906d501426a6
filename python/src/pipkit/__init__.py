"""pipkit: typed pip, requirements and virtual-environment operations."""

__version__ = "0.1.0"

from .errors import ErrorKind, PipError
from .environ.environment import PipManager
from .environ.pip_settings import CallOptions, PipSettings
from .pip.models import PackageSpec, VenvCreateOptions

__all__ = [
    "__version__",
    "ErrorKind",
    "PipError",
    "PipManager",
    "PipSettings",
    "CallOptions",
    "PackageSpec",
    "VenvCreateOptions",
]
