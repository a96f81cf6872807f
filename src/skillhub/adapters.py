from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from .errors import (
    AdapterNotFoundError,
    FilesystemError,
    InvalidManifestError,
    OperationNotImplementedError,
    SkillNotStagedError,
    UnsupportedInstallModeError,
    ValidationError,
)
from .models import InstallMode, SkillManifest
from .staging import backup_if_exists, remove_path

logger = logging.getLogger(__name__)

DEFAULT_BIN_DIRS: tuple[str, ...] = ("/usr/local/bin", "/opt/homebrew/bin", "~/.local/bin")

SETTINGS_SECTION = "skillhub"
SETTINGS_SKILLS_KEY = "skills"


@dataclass(frozen=True)
class DetectionResult:
    is_detected: bool
    reason: str


@dataclass(frozen=True)
class ProductSkillStatus:
    is_installed: bool
    is_enabled: bool
    detail: str


class ProductAdapter(Protocol):
    id: str
    name: str
    supported_install_modes: tuple[InstallMode, ...]

    def skills_directory(self) -> Path:
        ...

    def config_file_path(self) -> Path | None:
        ...

    def detect(self) -> DetectionResult:
        ...

    def resolve_install_mode(self, requested: InstallMode) -> InstallMode:
        ...

    def install(self, manifest: SkillManifest, mode: InstallMode) -> InstallMode:
        ...

    def enable(self, skill_id: str, mode: InstallMode) -> None:
        ...

    def disable(self, skill_id: str) -> None:
        ...

    def status(self, skill_id: str) -> ProductSkillStatus:
        ...


def resolve_install_mode(
    supported: Sequence[InstallMode],
    requested: InstallMode,
    product_id: str,
) -> InstallMode:
    """
    Turn a requested mode into the concrete mode an adapter will use.

    ``auto`` picks the first supported mode that needs no settings patch;
    anything else must be listed in ``supported`` as-is.
    """
    if requested is InstallMode.AUTO:
        for mode in supported:
            if mode.is_concrete and mode is not InstallMode.CONFIG_PATCH:
                return mode
        raise UnsupportedInstallModeError(
            f"No automatic install mode available for {product_id}", product_id=product_id
        )
    if requested.is_concrete and requested in supported:
        return requested
    raise UnsupportedInstallModeError(
        f"Install mode {requested.value} is not supported by {product_id}", product_id=product_id
    )


def first_existing_path(paths: Iterable[Path]) -> Path | None:
    for p in paths:
        if p.exists():
            return p
    return None


def first_executable(names: Iterable[str], bin_dirs: Iterable[str] = DEFAULT_BIN_DIRS) -> Path | None:
    dirs = [Path(d).expanduser() for d in bin_dirs]
    for name in names:
        found = shutil.which(name)
        if found:
            return Path(found)
        for d in dirs:
            candidate = d / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
    return None


def apply_config_patch(path: Path, patch: dict[str, str]) -> None:
    """Generic key/value patching of product config files. Not supported yet."""
    raise OperationNotImplementedError(f"Applying config patches is not implemented ({path})", path=path)


def _write_json_atomic(path: Path, data: Any) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise FilesystemError(f"Could not write {path}: {e}", path=path) from e


def _load_settings(path: Path, product_id: str) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        root = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidManifestError(f"{product_id} config is not readable JSON: {path}", path=path, product_id=product_id) from e
    if not isinstance(root, dict):
        raise InvalidManifestError(f"{product_id} config must be a JSON object: {path}", path=path, product_id=product_id)
    return root


def _validate_skill_path(value: Any, product_id: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidManifestError(f"{product_id} configPatch requires a non-empty skill path", product_id=product_id)
    if not Path(value.strip()).is_absolute():
        raise InvalidManifestError(
            f"{product_id} configPatch requires an absolute skill path: {value}", product_id=product_id
        )


def _skillhub_section(root: dict[str, Any], product_id: str) -> tuple[dict[str, Any], list[str]]:
    section = root.get(SETTINGS_SECTION, {})
    if not isinstance(section, dict):
        raise InvalidManifestError(
            f"{product_id} configPatch expects '{SETTINGS_SECTION}' to be an object", product_id=product_id
        )
    skills = section.get(SETTINGS_SKILLS_KEY, [])
    if not isinstance(skills, list) or not all(isinstance(s, str) for s in skills):
        raise InvalidManifestError(
            f"{product_id} configPatch expects '{SETTINGS_SECTION}.{SETTINGS_SKILLS_KEY}' to be a string array",
            product_id=product_id,
        )
    for entry in skills:
        _validate_skill_path(entry, product_id)
    return dict(section), list(skills)


def _matches(entry: str, skill_id: str, destination: Path) -> bool:
    return entry == str(destination) or Path(entry).name == skill_id


def register_settings_entry(settings_path: Path, product_id: str, skill_path: str) -> None:
    _validate_skill_path(skill_path, product_id)
    root = _load_settings(settings_path, product_id)
    section, skills = _skillhub_section(root, product_id)
    if skill_path not in skills:
        skills.append(skill_path)
    section[SETTINGS_SKILLS_KEY] = skills
    root[SETTINGS_SECTION] = section
    _write_json_atomic(settings_path, root)
    logger.info("Registered %s in %s", skill_path, settings_path)


def _registered_entries(settings_path: Path, product_id: str) -> tuple[dict[str, Any], dict[str, Any], list[str]] | None:
    # Unreadable or foreign-shaped settings are left alone when reading or unregistering.
    try:
        root = _load_settings(settings_path, product_id)
        section, skills = _skillhub_section(root, product_id)
    except InvalidManifestError as e:
        logger.debug("Ignoring %s: %s", settings_path, e)
        return None
    return root, section, skills


def unregister_settings_entries(settings_path: Path, product_id: str, skill_id: str, destination: Path) -> bool:
    loaded = _registered_entries(settings_path, product_id)
    if loaded is None:
        return False
    root, section, skills = loaded
    kept = [s for s in skills if not _matches(s, skill_id, destination)]
    if len(kept) == len(skills):
        return False
    section[SETTINGS_SKILLS_KEY] = kept
    root[SETTINGS_SECTION] = section
    _write_json_atomic(settings_path, root)
    logger.info("Unregistered %s from %s", skill_id, settings_path)
    return True


def is_registered_in_settings(settings_path: Path, product_id: str, skill_id: str, destination: Path) -> bool:
    loaded = _registered_entries(settings_path, product_id)
    if loaded is None:
        return False
    return any(_matches(s, skill_id, destination) for s in loaded[2])


class DirectoryProductAdapter:
    """
    A product that loads skills from a directory of its own.

    Built-in and user-declared products only differ in the data they are
    constructed with: where their skills live, which install modes they accept
    (in preference order), where their settings file is, and how to tell they
    are installed.
    """

    def __init__(
        self,
        *,
        id: str,
        name: str,
        skills_dir: Path,
        install_modes: Sequence[InstallMode],
        skills_root: Path,
        backups_root: Path,
        settings_path: Path | None = None,
        footprints: Sequence[Path] = (),
        executables: Sequence[str] = (),
        bin_dirs: Sequence[str] = DEFAULT_BIN_DIRS,
    ) -> None:
        if not install_modes:
            raise ValidationError(f"Product {id} declares no install modes", product_id=id)
        for mode in install_modes:
            if not mode.is_concrete:
                raise ValidationError(f"Product {id} declares invalid install mode {mode.value}", product_id=id)
        if InstallMode.CONFIG_PATCH in install_modes and settings_path is None:
            raise ValidationError(f"Product {id} supports configPatch but has no settings file", product_id=id)

        self.id = id
        self.name = name
        self.supported_install_modes = tuple(install_modes)
        self._skills_dir = Path(skills_dir)
        self._skills_root = Path(skills_root)
        self._backups_root = Path(backups_root)
        self._settings_path = settings_path
        self._footprints = tuple(footprints)
        self._executables = tuple(executables)
        self._bin_dirs = tuple(bin_dirs)

    def __repr__(self) -> str:
        return f"DirectoryProductAdapter(id={self.id!r}, skills_dir={str(self._skills_dir)!r})"

    def skills_directory(self) -> Path:
        return self._skills_dir

    def config_file_path(self) -> Path | None:
        return self._settings_path

    def detect(self) -> DetectionResult:
        found = first_existing_path(self._footprints)
        if found is not None:
            return DetectionResult(True, f"Detected {self.name} at {found}")
        exe = first_executable(self._executables, self._bin_dirs)
        if exe is not None:
            return DetectionResult(True, f"Found {self.name} executable at {exe}")
        missing = [str(p) for p in self._footprints] + list(self._executables)
        return DetectionResult(False, f"Missing {', '.join(missing) or 'any footprint'}")

    def resolve_install_mode(self, requested: InstallMode) -> InstallMode:
        return resolve_install_mode(self.supported_install_modes, requested, self.id)

    def _staged(self, skill_id: str) -> Path:
        source = self._skills_root / skill_id
        if not source.is_dir():
            raise SkillNotStagedError(
                f"Skill not staged in {source}", path=source, skill_id=skill_id, product_id=self.id
            )
        return source

    def _ensure_dir(self, path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Could not create directory {path}: {e}", path=path, product_id=self.id) from e

    def install(self, manifest: SkillManifest, mode: InstallMode) -> InstallMode:
        self._staged(manifest.id)
        resolved = self.resolve_install_mode(mode)
        self._ensure_dir(self.skills_directory())
        if resolved is InstallMode.CONFIG_PATCH and self._settings_path is not None:
            self._ensure_dir(self._settings_path.parent)
        return resolved

    def enable(self, skill_id: str, mode: InstallMode) -> None:
        source = self._staged(skill_id)
        resolved = self.resolve_install_mode(mode)
        self._ensure_dir(self.skills_directory())
        destination = self.skills_directory() / skill_id

        backup = backup_if_exists(destination, self._backups_root, self.id, skill_id)
        try:
            if resolved is InstallMode.SYMLINK:
                os.symlink(source.resolve(), destination, target_is_directory=True)
            else:
                shutil.copytree(source, destination, symlinks=True, ignore=shutil.ignore_patterns(".git"))
        except (OSError, shutil.Error) as e:
            self._restore(destination, backup)
            raise FilesystemError(
                f"Could not place {skill_id} at {destination}: {e}",
                path=destination,
                skill_id=skill_id,
                product_id=self.id,
            ) from e

        if resolved is InstallMode.CONFIG_PATCH and self._settings_path is not None:
            register_settings_entry(self._settings_path, self.id, str(destination.absolute()))
        logger.info("Enabled %s for %s (%s)", skill_id, self.id, resolved.value)

    def _restore(self, destination: Path, backup: Path | None) -> None:
        # Put the previous artifact back after a failed placement.
        if backup is None:
            return
        try:
            remove_path(destination)
            shutil.move(str(backup), str(destination))
        except OSError as e:
            logger.warning("Could not restore %s from %s: %s", destination, backup, e)
            return
        logger.info("Restored %s from %s", destination, backup)

    def disable(self, skill_id: str) -> None:
        destination = self.skills_directory() / skill_id
        try:
            removed = remove_path(destination)
        except OSError as e:
            raise FilesystemError(
                f"Could not remove {destination}: {e}", path=destination, skill_id=skill_id, product_id=self.id
            ) from e
        if self._settings_path is not None:
            unregister_settings_entries(self._settings_path, self.id, skill_id, destination.absolute())
        if removed:
            logger.info("Disabled %s for %s", skill_id, self.id)

    def status(self, skill_id: str) -> ProductSkillStatus:
        staged = (self._skills_root / skill_id).is_dir()
        destination = self.skills_directory() / skill_id
        registered = self._settings_path is not None and is_registered_in_settings(
            self._settings_path, self.id, skill_id, destination.absolute()
        )

        if destination.is_symlink():
            if not destination.exists():
                return ProductSkillStatus(staged, registered, f"Broken symlink at {destination}")
            return ProductSkillStatus(staged, True, f"Enabled via symlink at {destination}")
        if destination.exists():
            detail = f"Enabled via copied files at {destination}"
            if registered:
                detail += f" (registered in {self._settings_path})"
            return ProductSkillStatus(staged, True, detail)
        if registered:
            return ProductSkillStatus(staged, True, f"Registered in {self._settings_path} ({SETTINGS_SECTION}.{SETTINGS_SKILLS_KEY})")
        if staged:
            return ProductSkillStatus(True, False, "Installed but not enabled")
        return ProductSkillStatus(False, False, "Not installed")


class AdapterRegistry:
    def __init__(self, builtins: Iterable[ProductAdapter], custom: Iterable[ProductAdapter] = ()) -> None:
        self._adapters: dict[str, ProductAdapter] = {}
        for adapter in builtins:
            self._adapters[adapter.id] = adapter
        for adapter in custom:
            if adapter.id in self._adapters:
                logger.warning("Custom product %s shadows a built-in product; ignoring it", adapter.id)
                continue
            self._adapters[adapter.id] = adapter

    def adapter(self, product_id: str) -> ProductAdapter:
        try:
            return self._adapters[product_id]
        except KeyError:
            raise AdapterNotFoundError(product_id) from None

    def all(self) -> list[ProductAdapter]:
        return [self._adapters[k] for k in sorted(self._adapters)]

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._adapters
