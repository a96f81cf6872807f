from __future__ import annotations

import logging
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from . import staging
from .adapters import AdapterRegistry, DetectionResult, ProductAdapter, ProductSkillStatus
from .config import Config, SkillHubPaths
from .errors import AdapterNotFoundError, ProductNotDetectedError, ValidationError
from .importer import Importer, SourceKind
from .models import InstalledSkillRecord, InstallMode
from .products import build_registry
from .store import StateStore
from .updates import GitInspector, UpdateChecker, UpdateCheckResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    skill_id: str
    product_id: str
    requested_mode: InstallMode
    mode: InstallMode
    staged_path: Path


@dataclass(frozen=True)
class BindingStatus:
    product_id: str
    deployed: bool
    enabled: bool
    mode: InstallMode | None
    product: ProductSkillStatus


@dataclass(frozen=True)
class SkillStatus:
    record: InstalledSkillRecord
    staged: bool
    bindings: tuple[BindingStatus, ...]


@dataclass(frozen=True)
class DriftFix:
    skill_id: str
    product_id: str
    enabled: bool  # the value written to the state
    detail: str


class SkillHub:
    """
    End-user operations over the state store, the staging area and the product adapters.

    Every binding change goes through the product's adapter first and is only
    recorded in the state once the adapter succeeded.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        paths: SkillHubPaths,
        registry: AdapterRegistry,
        importer: Importer | None = None,
        inspector: GitInspector | None = None,
        git_hosts: tuple[str, ...] = (),
    ) -> None:
        self.store = store
        self.paths = paths
        self.registry = registry
        self.importer = importer if importer is not None else Importer(git_hosts=git_hosts)
        self.inspector = inspector
        self.git_hosts = git_hosts

    @classmethod
    def from_config(cls, cfg: Config, paths: SkillHubPaths, *, home: Path | None = None) -> "SkillHub":
        store = StateStore(paths.state_file)
        overrides = store.load_state().product_config_path_overrides
        registry = build_registry(cfg, paths, home=home, config_path_overrides=overrides)
        git_hosts = tuple(cfg.git_hosts)
        importer = Importer(timeout_s=cfg.timeout_s, git_hosts=git_hosts)
        return cls(store=store, paths=paths, registry=registry, importer=importer, git_hosts=git_hosts)

    def close(self) -> None:
        self.importer.close()

    def __enter__(self) -> "SkillHub":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def _workdir(self) -> Iterator[Path]:
        self.paths.workdir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="skillhub-import-", dir=self.paths.workdir) as td:
            yield Path(td)

    # Skills

    def skills(self) -> list[InstalledSkillRecord]:
        return list(self.store.load_state().skills)

    def add(self, source: str) -> InstalledSkillRecord:
        """
        Register a skill from a local path, manifest URL or git remote.

        Local skills keep pointing at their source manifest. Downloaded and
        cloned skills only exist in a temporary directory, so they are staged
        right away and recorded with the staged manifest path.
        """
        with self._workdir() as wd:
            resolved = self.importer.resolve(source, wd)
            if resolved.source_kind is SourceKind.LOCAL:
                return self.store.upsert_skill(resolved.manifest, resolved.manifest_path, resolved.source)
            staged = staging.stage_skill(self.paths.skills_root, resolved.manifest.id, resolved.directory)
            manifest_path = staged / resolved.manifest_path.relative_to(resolved.directory)
            return self.store.upsert_skill(resolved.manifest, manifest_path, resolved.source)

    def stage(self, target: str) -> Path:
        """Stage a registered skill by id, or register ``target`` as a source and stage it."""
        record = self.store.load_state().find(target)
        if record is None:
            record = self.add(target)
        source_dir = Path(record.manifest_path).parent
        return staging.stage_skill(self.paths.skills_root, record.id, source_dir)

    def unstage(self, skill_id: str) -> bool:
        return staging.unstage(self.paths.skills_root, skill_id)

    def remove(self, skill_id: str, *, purge: bool = False) -> bool:
        record = self.store.get_skill(skill_id)
        if record.deployed_products:
            logger.warning(
                "Removing %s while still deployed to %s", skill_id, ", ".join(sorted(record.deployed_products))
            )
        self.store.remove_skill(skill_id)
        if purge:
            return self.unstage(skill_id)
        return False

    # Bindings

    def deploy(self, skill_id: str, product_id: str, mode: InstallMode = InstallMode.AUTO) -> InstallMode:
        record = self.store.get_skill(skill_id)
        adapter = self.registry.adapter(product_id)
        detection = adapter.detect()
        if not detection.is_detected:
            raise ProductNotDetectedError(
                f"{detection.reason}. Run: skillhub doctor", skill_id=skill_id, product_id=product_id
            )
        chosen = adapter.install(record.manifest, mode)
        self.store.mark_deployed(skill_id, product_id, chosen)
        logger.info("Deployed %s to %s (requested %s, using %s)", skill_id, product_id, mode.value, chosen.value)
        return chosen

    def enable(self, skill_id: str, product_id: str) -> InstallMode:
        record = self.store.get_skill(skill_id)
        mode = record.last_deploy_mode_by_product.get(product_id)
        if mode is None:
            raise ValidationError(
                f"Skill {skill_id} is not deployed to {product_id}. Run: skillhub deploy {skill_id} {product_id}",
                skill_id=skill_id,
                product_id=product_id,
            )
        self.registry.adapter(product_id).enable(skill_id, mode)
        self.store.set_enabled(skill_id, product_id, True)
        return mode

    def disable(self, skill_id: str, product_id: str) -> None:
        self.store.get_skill(skill_id)
        self.registry.adapter(product_id).disable(skill_id)
        self.store.set_enabled(skill_id, product_id, False)

    def uninstall(self, skill_id: str, product_id: str) -> None:
        self.store.get_skill(skill_id)
        self.registry.adapter(product_id).disable(skill_id)
        self.store.mark_undeployed(skill_id, product_id)

    def apply(
        self,
        target: str,
        product_id: str,
        mode: InstallMode = InstallMode.AUTO,
        progress: Callable[[str], None] | None = None,
    ) -> ApplyResult:
        """Stage, deploy and enable in one go. ``target`` is a registered skill id or a source."""
        report = progress or (lambda _msg: None)
        adapter = self.registry.adapter(product_id)

        report(f"[1/4] Staging {target}")
        staged_path = self.stage(target)
        skill_id = staged_path.name

        report(f"[2/4] Deploying {skill_id} to {product_id} (requested mode: {mode.value})")
        chosen = self.deploy(skill_id, product_id, mode)

        report(f"[3/4] Enabling {skill_id} for {product_id} with mode {chosen.value}")
        adapter.enable(skill_id, chosen)

        report("[4/4] Updating state (deployed + enabled)")
        self.store.set_enabled(skill_id, product_id, True)
        return ApplyResult(skill_id, product_id, mode, chosen, staged_path)

    # Inspection

    def status(self, skill_id: str | None = None) -> list[SkillStatus]:
        if skill_id is not None:
            records = [self.store.get_skill(skill_id)]
        else:
            records = self.skills()

        out: list[SkillStatus] = []
        for record in records:
            bindings: list[BindingStatus] = []
            for product_id in sorted(record.deployed_products | record.enabled_products):
                try:
                    product = self.registry.adapter(product_id).status(record.id)
                except AdapterNotFoundError:
                    product = ProductSkillStatus(False, False, "Unknown product")
                bindings.append(
                    BindingStatus(
                        product_id=product_id,
                        deployed=product_id in record.deployed_products,
                        enabled=product_id in record.enabled_products,
                        mode=record.last_deploy_mode_by_product.get(product_id),
                        product=product,
                    )
                )
            staged = self.paths.skill_dir(record.id).is_dir()
            out.append(SkillStatus(record=record, staged=staged, bindings=tuple(bindings)))
        return out

    def reconcile(self) -> list[DriftFix]:
        """Bring recorded enabled flags in line with what the products actually have on disk."""
        fixes: list[DriftFix] = []
        for record in self.skills():
            for product_id in sorted(record.deployed_products):
                if product_id not in self.registry:
                    continue
                actual = self.registry.adapter(product_id).status(record.id)
                recorded = product_id in record.enabled_products
                if recorded == actual.is_enabled:
                    continue
                self.store.set_enabled(record.id, product_id, actual.is_enabled)
                fixes.append(DriftFix(record.id, product_id, actual.is_enabled, actual.detail))
                logger.info("Reconciled %s/%s: enabled=%s (%s)", record.id, product_id, actual.is_enabled, actual.detail)
        return fixes

    def check_updates(self) -> list[UpdateCheckResult]:
        checker = UpdateChecker(self.store, self.paths, self.inspector, self.git_hosts)
        return checker.run()

    def detect_products(self) -> list[tuple[ProductAdapter, DetectionResult]]:
        return [(adapter, adapter.detect()) for adapter in self.registry.all()]

    def set_product_config_path(self, product_id: str, path: str | None) -> None:
        self.registry.adapter(product_id)
        self.store.set_product_config_path(product_id, path)

    def collect_garbage(self) -> list[Path]:
        return staging.collect_garbage(self.paths.skills_root)
