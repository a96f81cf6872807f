from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .adapters import AdapterRegistry, DirectoryProductAdapter
from .config import Config, SkillHubPaths
from .errors import ValidationError
from .models import InstallMode

_COPY = InstallMode.COPY
_SYMLINK = InstallMode.SYMLINK
_PATCH = InstallMode.CONFIG_PATCH


@dataclass(frozen=True)
class CustomProduct:
    id: str
    name: str
    skills_dir: Path
    install_modes: tuple[InstallMode, ...] = (_COPY,)
    executables: tuple[str, ...] = ()
    settings_path: Path | None = None


def parse_custom_product(raw: Any) -> CustomProduct:
    if not isinstance(raw, dict):
        raise ValidationError("custom_products entries must be objects")

    product_id = raw.get("id")
    if not isinstance(product_id, str) or not product_id.strip():
        raise ValidationError("custom product requires a non-empty 'id'")
    product_id = product_id.strip()

    skills_dir = raw.get("skills_dir")
    if not isinstance(skills_dir, str) or not skills_dir.strip():
        raise ValidationError(f"custom product {product_id} requires 'skills_dir'", product_id=product_id)

    name = raw.get("name")
    modes_raw = raw.get("install_modes") or [_COPY.value]
    if not isinstance(modes_raw, list) or not all(isinstance(m, str) for m in modes_raw):
        raise ValidationError(f"custom product {product_id}: 'install_modes' must be a list of strings", product_id=product_id)
    modes = tuple(InstallMode.parse(m, strict=True) for m in modes_raw)

    executables = raw.get("executables") or []
    if not isinstance(executables, list) or not all(isinstance(e, str) for e in executables):
        raise ValidationError(f"custom product {product_id}: 'executables' must be a list of strings", product_id=product_id)

    settings_path = raw.get("settings_path")
    if settings_path is not None and not isinstance(settings_path, str):
        raise ValidationError(f"custom product {product_id}: 'settings_path' must be a string", product_id=product_id)

    return CustomProduct(
        id=product_id,
        name=name.strip() if isinstance(name, str) and name.strip() else product_id,
        skills_dir=Path(skills_dir.strip()).expanduser(),
        install_modes=modes,
        executables=tuple(executables),
        settings_path=Path(settings_path.strip()).expanduser() if settings_path and settings_path.strip() else None,
    )


def _builtin_adapters(
    paths: SkillHubPaths,
    home: Path,
    skills_dir_overrides: Mapping[str, str],
    config_path_overrides: Mapping[str, str],
) -> list[DirectoryProductAdapter]:
    def skills_dir(product_id: str, default: Path) -> Path:
        raw = skills_dir_overrides.get(product_id)
        return Path(raw).expanduser() if raw else default

    def settings(product_id: str, default: Path) -> Path:
        raw = config_path_overrides.get(product_id)
        return Path(raw).expanduser() if raw else default

    claude_root = home / ".claude"
    codex_root = home / ".codex"
    cursor_app_root = home / "Library" / "Application Support" / "Cursor"
    cursor_dot_root = home / ".cursor"
    openclaw_root = home / ".openclaw"
    opencode_root = home / ".config" / "opencode"

    cursor_default = cursor_app_root / "skills" if cursor_app_root.exists() else cursor_dot_root / "skills"
    common = {"skills_root": paths.skills_root, "backups_root": paths.backups_root}

    return [
        DirectoryProductAdapter(
            id="claude-code",
            name="Claude Code",
            skills_dir=skills_dir("claude-code", claude_root / "skills"),
            install_modes=(_COPY, _PATCH),
            settings_path=settings("claude-code", claude_root / "settings.json"),
            footprints=(claude_root,),
            **common,
        ),
        DirectoryProductAdapter(
            id="codex",
            name="Codex",
            skills_dir=skills_dir("codex", codex_root / "skills"),
            install_modes=(_COPY, _SYMLINK),
            footprints=(codex_root,),
            **common,
        ),
        DirectoryProductAdapter(
            id="cursor",
            name="Cursor",
            skills_dir=skills_dir("cursor", cursor_default),
            install_modes=(_COPY, _SYMLINK, _PATCH),
            settings_path=settings("cursor", cursor_app_root / "User" / "settings.json"),
            footprints=(cursor_app_root, cursor_dot_root),
            **common,
        ),
        DirectoryProductAdapter(
            id="openclaw",
            name="OpenClaw",
            skills_dir=skills_dir("openclaw", openclaw_root / "skills"),
            install_modes=(_COPY, _SYMLINK),
            footprints=(openclaw_root,),
            executables=("openclaw",),
            **common,
        ),
        DirectoryProductAdapter(
            id="opencode",
            name="OpenCode",
            skills_dir=skills_dir("opencode", opencode_root / "skills"),
            install_modes=(_SYMLINK, _COPY, _PATCH),
            settings_path=settings("opencode", opencode_root / "config.json"),
            footprints=(opencode_root,),
            executables=("opencode",),
            **common,
        ),
    ]


def build_registry(
    cfg: Config,
    paths: SkillHubPaths,
    *,
    home: Path | None = None,
    config_path_overrides: Mapping[str, str] | None = None,
) -> AdapterRegistry:
    """
    Assemble the registry of built-in and user-declared products.

    ``config_path_overrides`` comes from the state file (per-product settings
    file locations); skills directory overrides come from ``cfg``.
    """
    home = home if home is not None else Path.home()
    builtins = _builtin_adapters(paths, home, cfg.skills_dir_overrides, config_path_overrides or {})

    custom: list[DirectoryProductAdapter] = []
    for raw in cfg.custom_products:
        product = parse_custom_product(raw)
        custom.append(
            DirectoryProductAdapter(
                id=product.id,
                name=product.name,
                skills_dir=product.skills_dir,
                install_modes=product.install_modes,
                skills_root=paths.skills_root,
                backups_root=paths.backups_root,
                settings_path=_custom_settings(product, config_path_overrides or {}),
                footprints=(product.skills_dir,),
                executables=product.executables,
            )
        )
    return AdapterRegistry(builtins, custom)


def _custom_settings(product: CustomProduct, overrides: Mapping[str, str]) -> Path | None:
    raw = overrides.get(product.id)
    if raw:
        return Path(raw).expanduser()
    if product.settings_path is None and _PATCH in product.install_modes:
        raise ValidationError(
            f"custom product {product.id} uses configPatch but declares no 'settings_path'", product_id=product.id
        )
    return product.settings_path
