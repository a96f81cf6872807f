from ._version import __version__
from .config import Config, SkillHubPaths, load_config, resolve_paths
from .errors import SkillHubError
from .hub import SkillHub
from .models import InstallMode, SkillManifest
from .store import StateStore

__all__ = [
    "Config",
    "InstallMode",
    "SkillHub",
    "SkillHubError",
    "SkillHubPaths",
    "SkillManifest",
    "StateStore",
    "__version__",
    "load_config",
    "resolve_paths",
]
