from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO, TypeVar

from .errors import (
    InvalidManifestError,
    SkillNotFoundError,
    StateCorruptedError,
    StateError,
    StateLockError,
    UnsupportedInstallModeError,
    ValidationError,
)
from .models import (
    InstalledSkillRecord,
    InstallMode,
    SkillHubState,
    SkillManifest,
    state_from_dict,
    state_to_dict,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _lock_file(handle: IO[str]) -> None:
    if sys.platform == "win32":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
    else:
        import fcntl

        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)


def _unlock_file(handle: IO[str]) -> None:
    if sys.platform == "win32":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class StateStore:
    """
    Durable record of skills and their per-product bindings.

    Every public operation holds an exclusive advisory lock on ``<state>.lock``
    for its whole read-modify-write cycle, and every write goes to a temp file
    in the same directory that is then renamed over the state file.
    """

    def __init__(self, state_file: Path) -> None:
        self.state_file = Path(state_file).expanduser()
        self.lock_path = self.state_file.with_name(self.state_file.name + ".lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.lock_path, "a+", encoding="utf-8")
        except OSError as e:
            raise StateLockError(f"Could not open lock file: {e}", path=self.lock_path) from e
        try:
            try:
                _lock_file(handle)
            except OSError as e:
                raise StateLockError(f"Could not acquire state lock: {e}", path=self.lock_path) from e
            try:
                yield
            finally:
                _unlock_file(handle)
        finally:
            handle.close()

    def _read_state(self) -> SkillHubState:
        try:
            text = self.state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return SkillHubState()
        except OSError as e:
            raise StateError(f"Could not read state file: {e}", path=self.state_file) from e
        try:
            return state_from_dict(json.loads(text))
        except (ValueError, TypeError, InvalidManifestError) as e:
            raise StateCorruptedError(f"State file is corrupted: {e}", path=self.state_file) from e

    def _write_state(self, state: SkillHubState) -> None:
        payload = json.dumps(state_to_dict(state), indent=2, sort_keys=True) + "\n"
        directory = self.state_file.parent
        try:
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{self.state_file.name}.", suffix=".tmp")
        except OSError as e:
            raise StateError(f"Could not create temp state file: {e}", path=directory) from e

        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.state_file)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StateError(f"Could not write state file: {e}", path=self.state_file) from e
        logger.debug("Wrote state %s (%d skills)", self.state_file, len(state.skills))

    def _mutate(self, fn: Callable[[SkillHubState], T]) -> T:
        with self._locked():
            state = self._read_state()
            previous = state.updated_at
            result = fn(state)
            state.updated_at = max(utcnow(), previous)
            self._write_state(state)
            return result

    def load_state(self) -> SkillHubState:
        with self._locked():
            return self._read_state()

    def save_state(self, state: SkillHubState) -> None:
        with self._locked():
            try:
                previous = self._read_state().updated_at
            except StateCorruptedError:
                previous = state.updated_at
            state.updated_at = max(utcnow(), previous, state.updated_at)
            self._write_state(state)

    def get_skill(self, skill_id: str) -> InstalledSkillRecord:
        return _require(self.load_state(), skill_id)

    def upsert_skill(
        self,
        manifest: SkillManifest,
        manifest_path: str | Path,
        manifest_source: str | None = None,
    ) -> InstalledSkillRecord:
        def apply(state: SkillHubState) -> InstalledSkillRecord:
            record = state.find(manifest.id)
            if record is None:
                record = InstalledSkillRecord(
                    manifest=manifest,
                    manifest_path=str(manifest_path),
                    manifest_source=manifest_source,
                )
                state.skills.append(record)
                logger.info("Registered skill %s", manifest.id)
                return record
            record.manifest = manifest
            record.manifest_path = str(manifest_path)
            if manifest_source is not None:
                record.manifest_source = manifest_source
            logger.info("Updated skill %s", manifest.id)
            return record

        return self._mutate(apply)

    def mark_deployed(self, skill_id: str, product_id: str, mode: InstallMode) -> None:
        if not mode.is_concrete:
            raise UnsupportedInstallModeError(
                f"Cannot record install mode {mode.value!r} for {skill_id} on {product_id}",
                skill_id=skill_id,
                product_id=product_id,
            )

        def apply(state: SkillHubState) -> None:
            record = _require(state, skill_id)
            record.deployed_products.add(product_id)
            record.last_deploy_mode_by_product[product_id] = mode

        self._mutate(apply)

    def mark_undeployed(self, skill_id: str, product_id: str) -> None:
        def apply(state: SkillHubState) -> None:
            record = _require(state, skill_id)
            record.deployed_products.discard(product_id)
            record.enabled_products.discard(product_id)
            record.last_deploy_mode_by_product.pop(product_id, None)

        self._mutate(apply)

    def set_enabled(self, skill_id: str, product_id: str, enabled: bool) -> None:
        def apply(state: SkillHubState) -> None:
            record = _require(state, skill_id)
            if not enabled:
                record.enabled_products.discard(product_id)
                return
            if product_id not in record.deployed_products:
                raise ValidationError(
                    f"Skill {skill_id} is not deployed to {product_id}",
                    skill_id=skill_id,
                    product_id=product_id,
                )
            record.enabled_products.add(product_id)

        self._mutate(apply)

    def set_has_update(self, skill_id: str, has_update: bool) -> None:
        def apply(state: SkillHubState) -> None:
            _require(state, skill_id).has_update = has_update

        self._mutate(apply)

    def set_product_config_path(self, product_id: str, path: str | Path | None) -> None:
        value = str(path).strip() if path is not None else ""

        def apply(state: SkillHubState) -> None:
            if value:
                state.product_config_path_overrides[product_id] = value
            else:
                state.product_config_path_overrides.pop(product_id, None)

        self._mutate(apply)

    def remove_skill(self, skill_id: str) -> None:
        def apply(state: SkillHubState) -> None:
            record = _require(state, skill_id)
            state.skills.remove(record)
            logger.info("Removed skill %s", skill_id)

        self._mutate(apply)


def _require(state: SkillHubState, skill_id: str) -> InstalledSkillRecord:
    record = state.find(skill_id)
    if record is None:
        raise SkillNotFoundError(skill_id)
    return record
