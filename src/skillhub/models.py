from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import InvalidManifestError, UnsupportedInstallModeError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SKILL_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")

# Field names written by older releases, read when the canonical name is absent.
_RECORD_ALIASES = {
    "deployedProducts": "installedProducts",
    "lastDeployModeByProduct": "lastInstallModeByProduct",
}
_STATE_ALIASES = {
    "productConfigPathOverrides": "productConfigFilePathOverrides",
}


class InstallMode(str, Enum):
    AUTO = "auto"
    SYMLINK = "symlink"
    COPY = "copy"
    CONFIG_PATCH = "configPatch"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str, *, strict: bool = False) -> InstallMode:
        value = raw.strip() if isinstance(raw, str) else ""
        if value == "config-patch":
            return cls.CONFIG_PATCH
        for mode in cls:
            if mode.value == value and mode is not cls.UNKNOWN:
                return mode
        if strict:
            raise UnsupportedInstallModeError(f"Unsupported install mode: {raw!r}")
        return cls.UNKNOWN

    @property
    def is_concrete(self) -> bool:
        return self in (InstallMode.SYMLINK, InstallMode.COPY, InstallMode.CONFIG_PATCH)


@dataclass(frozen=True)
class AdapterHint:
    product_id: str
    install_mode: InstallMode
    target_path: str | None = None
    config_patch: dict[str, str] | None = None


@dataclass(frozen=True)
class SkillManifest:
    id: str
    name: str
    version: str
    summary: str
    entrypoint: str | None = None
    tags: frozenset[str] = frozenset()
    adapters: tuple[AdapterHint, ...] = ()


@dataclass
class InstalledSkillRecord:
    manifest: SkillManifest
    manifest_path: str
    manifest_source: str | None = None
    deployed_products: set[str] = field(default_factory=set)
    enabled_products: set[str] = field(default_factory=set)
    last_deploy_mode_by_product: dict[str, InstallMode] = field(default_factory=dict)
    has_update: bool = False

    @property
    def id(self) -> str:
        return self.manifest.id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SkillHubState:
    schema_version: int = SCHEMA_VERSION
    skills: list[InstalledSkillRecord] = field(default_factory=list)
    product_config_path_overrides: dict[str, str] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)

    def find(self, skill_id: str) -> InstalledSkillRecord | None:
        for record in self.skills:
            if record.id == skill_id:
                return record
        return None


def validate_skill_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidManifestError("Manifest id must be a non-empty string")
    skill_id = value.strip()
    if not _SKILL_ID_RE.match(skill_id):
        raise InvalidManifestError(
            f"Invalid skill id {skill_id!r}. Use lowercase letters, digits, '-' and '_'.",
            skill_id=skill_id,
        )
    return skill_id


def _required_str(raw: dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise InvalidManifestError(f"Manifest field {key!r} must be a string")
    value = value.strip()
    if not value and not allow_empty:
        raise InvalidManifestError(f"Manifest field {key!r} must not be empty")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidManifestError(f"Manifest field {key!r} must be a string")
    return value.strip() or None


def _parse_hint(raw: Any) -> AdapterHint:
    if not isinstance(raw, dict):
        raise InvalidManifestError("Manifest 'adapters' entries must be objects")
    product_id = raw.get("productID")
    if not isinstance(product_id, str) or not product_id.strip():
        raise InvalidManifestError("Adapter entry requires a non-empty 'productID'")
    mode_raw = raw.get("installMode", InstallMode.AUTO.value)
    if not isinstance(mode_raw, str):
        raise InvalidManifestError(f"Adapter entry for {product_id!r} has a non-string 'installMode'")

    patch = raw.get("configPatch")
    config_patch: dict[str, str] | None = None
    if patch is not None:
        if not isinstance(patch, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in patch.items()):
            raise InvalidManifestError(f"Adapter entry for {product_id!r}: 'configPatch' must map strings to strings")
        config_patch = dict(patch)

    return AdapterHint(
        product_id=product_id.strip(),
        install_mode=InstallMode.parse(mode_raw),
        target_path=_optional_str(raw, "targetPath"),
        config_patch=config_patch,
    )


def parse_manifest(raw: Any) -> SkillManifest:
    if not isinstance(raw, dict):
        raise InvalidManifestError("Manifest must be a JSON object")

    skill_id = validate_skill_id(raw.get("id"))
    try:
        tags_raw = raw.get("tags") or []
        if not isinstance(tags_raw, list) or not all(isinstance(t, str) for t in tags_raw):
            raise InvalidManifestError("Manifest field 'tags' must be a list of strings")
        adapters_raw = raw.get("adapters") or []
        if not isinstance(adapters_raw, list):
            raise InvalidManifestError("Manifest field 'adapters' must be a list")

        return SkillManifest(
            id=skill_id,
            name=_required_str(raw, "name"),
            version=_required_str(raw, "version"),
            summary=_required_str(raw, "summary", allow_empty=True),
            entrypoint=_optional_str(raw, "entrypoint"),
            tags=frozenset(t.strip() for t in tags_raw if t.strip()),
            adapters=tuple(_parse_hint(a) for a in adapters_raw),
        )
    except InvalidManifestError as e:
        if e.skill_id is None:
            e.skill_id = skill_id
        raise


def load_manifest(path: Path) -> SkillManifest:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise InvalidManifestError(f"Manifest not found: {path}", path=path) from e
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidManifestError(f"Could not read manifest {path}: {e}", path=path) from e
    try:
        return parse_manifest(raw)
    except InvalidManifestError as e:
        e.path = path
        raise


def manifest_to_dict(manifest: SkillManifest) -> dict[str, Any]:
    adapters: list[dict[str, Any]] = []
    for hint in manifest.adapters:
        item: dict[str, Any] = {"productID": hint.product_id, "installMode": hint.install_mode.value}
        if hint.target_path is not None:
            item["targetPath"] = hint.target_path
        if hint.config_patch is not None:
            item["configPatch"] = dict(hint.config_patch)
        adapters.append(item)

    out: dict[str, Any] = {
        "id": manifest.id,
        "name": manifest.name,
        "version": manifest.version,
        "summary": manifest.summary,
        "tags": sorted(manifest.tags),
        "adapters": adapters,
    }
    if manifest.entrypoint is not None:
        out["entrypoint"] = manifest.entrypoint
    return out


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _aliased(raw: dict[str, Any], key: str, aliases: dict[str, str]) -> Any:
    if key in raw:
        return raw[key]
    legacy = aliases.get(key)
    if legacy is not None:
        return raw.get(legacy)
    return None


def _string_set(value: Any, *, field_name: str) -> set[str]:
    if value is None:
        return set()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{field_name} must be a list of strings")
    return set(value)


def record_to_dict(record: InstalledSkillRecord) -> dict[str, Any]:
    out: dict[str, Any] = {
        "manifest": manifest_to_dict(record.manifest),
        "manifestPath": record.manifest_path,
        "deployedProducts": sorted(record.deployed_products),
        "enabledProducts": sorted(record.enabled_products),
        "lastDeployModeByProduct": {k: v.value for k, v in sorted(record.last_deploy_mode_by_product.items())},
        "hasUpdate": record.has_update,
    }
    if record.manifest_source is not None:
        out["manifestSource"] = record.manifest_source
    return out


def record_from_dict(raw: Any) -> InstalledSkillRecord:
    if not isinstance(raw, dict):
        raise ValueError("skill record must be an object")

    manifest = parse_manifest(raw.get("manifest"))
    manifest_path = raw.get("manifestPath")
    if not isinstance(manifest_path, str):
        raise ValueError(f"skill {manifest.id}: manifestPath must be a string")
    source = raw.get("manifestSource")
    if source is not None and not isinstance(source, str):
        raise ValueError(f"skill {manifest.id}: manifestSource must be a string")

    deployed = _string_set(_aliased(raw, "deployedProducts", _RECORD_ALIASES), field_name="deployedProducts")
    enabled = _string_set(raw.get("enabledProducts"), field_name="enabledProducts")

    modes_raw = _aliased(raw, "lastDeployModeByProduct", _RECORD_ALIASES) or {}
    if not isinstance(modes_raw, dict):
        raise ValueError(f"skill {manifest.id}: lastDeployModeByProduct must be an object")
    modes: dict[str, InstallMode] = {}
    for product_id, mode_raw in modes_raw.items():
        mode = InstallMode.parse(mode_raw)
        if not mode.is_concrete or product_id not in deployed:
            logger.warning("Dropping deploy mode %r for %s/%s", mode_raw, manifest.id, product_id)
            continue
        modes[product_id] = mode

    if not enabled <= deployed:
        logger.warning("Skill %s enabled for undeployed products %s; dropping", manifest.id, sorted(enabled - deployed))
        enabled &= deployed

    has_update = raw.get("hasUpdate", False)
    if not isinstance(has_update, bool):
        raise ValueError(f"skill {manifest.id}: hasUpdate must be a boolean")

    return InstalledSkillRecord(
        manifest=manifest,
        manifest_path=manifest_path,
        manifest_source=source,
        deployed_products=deployed,
        enabled_products=enabled,
        last_deploy_mode_by_product=modes,
        has_update=has_update,
    )


def state_to_dict(state: SkillHubState) -> dict[str, Any]:
    return {
        "schemaVersion": state.schema_version,
        "skills": [record_to_dict(r) for r in state.skills],
        "productConfigPathOverrides": dict(sorted(state.product_config_path_overrides.items())),
        "updatedAt": format_timestamp(state.updated_at),
    }


def state_from_dict(raw: Any) -> SkillHubState:
    if not isinstance(raw, dict):
        raise ValueError("state document must be a JSON object")

    schema_version = raw.get("schemaVersion", SCHEMA_VERSION)
    if not isinstance(schema_version, int):
        raise ValueError("schemaVersion must be an integer")

    skills_raw = raw.get("skills") or []
    if not isinstance(skills_raw, list):
        raise ValueError("skills must be a list")
    skills: list[InstalledSkillRecord] = []
    seen: set[str] = set()
    for item in skills_raw:
        record = record_from_dict(item)
        if record.id in seen:
            raise ValueError(f"duplicate skill id: {record.id}")
        seen.add(record.id)
        skills.append(record)

    overrides_raw = _aliased(raw, "productConfigPathOverrides", _STATE_ALIASES) or {}
    if not isinstance(overrides_raw, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in overrides_raw.items()
    ):
        raise ValueError("productConfigPathOverrides must map strings to strings")

    updated_raw = raw.get("updatedAt")
    updated_at = parse_timestamp(updated_raw) if updated_raw is not None else utcnow()

    return SkillHubState(
        schema_version=schema_version,
        skills=skills,
        product_config_path_overrides=dict(overrides_raw),
        updated_at=updated_at,
    )
