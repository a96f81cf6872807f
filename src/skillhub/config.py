from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

from .errors import FilesystemError, ValidationError

APP_NAME = "skillhub"
DEFAULT_TIMEOUT_S = 30.0

STATE_FILENAME = "state.json"


@dataclass(frozen=True)
class Config:
    state_dir: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    skills_dir_overrides: dict[str, str] = field(default_factory=dict)  # product id -> skills dir
    custom_products: list[dict[str, Any]] = field(default_factory=list)
    git_hosts: list[str] = field(default_factory=list)  # extra https hosts treated as git remotes


_FIELDS = frozenset(f.name for f in fields(Config))


@dataclass(frozen=True)
class SkillHubPaths:
    root: Path

    @property
    def state_file(self) -> Path:
        return self.root / STATE_FILENAME

    @property
    def skills_root(self) -> Path:
        return self.root / "skills"

    @property
    def backups_root(self) -> Path:
        return self.root / "backups"

    @property
    def workdir(self) -> Path:
        return self.root / "tmp"

    def skill_dir(self, skill_id: str) -> Path:
        return self.skills_root / skill_id


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLHUB_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def _check_values(raw: dict[str, Any], path: Path) -> dict[str, Any]:
    """Keep known keys and reject values of the wrong shape."""

    def bad(key: str, expected: str) -> ValidationError:
        return ValidationError(f"Invalid config value '{key}' in {path}: expected {expected}", path=path)

    out: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in _FIELDS:
            continue
        if key == "state_dir":
            if value is not None and not isinstance(value, str):
                raise bad(key, "a string or null")
        elif key == "timeout_s":
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise bad(key, "a positive number")
            value = float(value)
        elif key == "skills_dir_overrides":
            if not isinstance(value, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in value.items()
            ):
                raise bad(key, "an object mapping product ids to paths")
        elif key == "custom_products":
            if not isinstance(value, list) or not all(isinstance(p, dict) for p in value):
                raise bad(key, "a list of objects")
        elif key == "git_hosts":
            if not isinstance(value, list) or not all(isinstance(h, str) for h in value):
                raise bad(key, "a list of host names")
        out[key] = value
    return out


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ValidationError(f"Could not read config file {path}: {e}", path=path) from e
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid config file {path}: {e}", path=path) from e
    if not isinstance(raw, dict):
        raise ValidationError(f"Invalid config file {path}: expected a JSON object", path=path)

    return Config(**_check_values(raw, path))


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise FilesystemError(f"Could not write config file {path}: {e}", path=path) from e
    return path


def set_config_value(key: str, value: str, path_override: str | Path | None = None) -> Config:
    """
    Update one key of the config file and save it.

    ``state_dir`` takes the value literally (empty clears it); every other key
    takes a JSON value, e.g. ``30`` or ``["git.example.com"]``.
    """
    path = config_path(path_override)
    if key not in _FIELDS:
        raise ValidationError(f"Unknown config key: {key} (known: {', '.join(sorted(_FIELDS))})", path=path)

    parsed: Any
    if key == "state_dir":
        parsed = value or None
    else:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Value for '{key}' must be JSON: {e}", path=path) from e

    cfg = replace(load_config(path), **_check_values({key: parsed}, path))
    save_config(cfg, path)
    return cfg


def resolve_paths(cfg: Config, state_override: str | Path | None = None) -> SkillHubPaths:
    # CLI flag, then config file, then env, then the platform data dir.
    if state_override is not None:
        return SkillHubPaths(root=Path(state_override).expanduser())
    if cfg.state_dir:
        return SkillHubPaths(root=Path(cfg.state_dir).expanduser())
    if env := os.getenv("SKILLHUB_HOME"):
        return SkillHubPaths(root=Path(env).expanduser())
    return SkillHubPaths(root=user_data_path(APP_NAME))
