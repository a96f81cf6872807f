import json
import multiprocessing
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from skillhub.errors import (
    SkillNotFoundError,
    StateCorruptedError,
    StateError,
    UnsupportedInstallModeError,
    ValidationError,
)
from skillhub.models import InstallMode, SkillHubState, SkillManifest
from skillhub.store import StateStore


def _manifest(skill_id: str = "hello-world", version: str = "1.0.0") -> SkillManifest:
    return SkillManifest(id=skill_id, name="Hello", version=version, summary="hi")


def _upsert_many(state_file: str, worker: int, count: int) -> None:
    store = StateStore(Path(state_file))
    for i in range(count):
        store.upsert_skill(_manifest(f"w{worker}-s{i}"), f"/src/{worker}/{i}/skill.json")


class TestStateStore(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.store = StateStore(self.root / "state.json")

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_missing_file_loads_empty_state(self) -> None:
        state = self.store.load_state()
        self.assertEqual(state.skills, [])
        self.assertEqual(state.schema_version, 1)

    def test_upsert_is_idempotent_and_keeps_bindings(self) -> None:
        self.store.upsert_skill(_manifest(), "/src/skill.json", "git@github.com:acme/hello.git")
        self.store.mark_deployed("hello-world", "codex", InstallMode.COPY)
        self.store.set_enabled("hello-world", "codex", True)

        self.store.upsert_skill(_manifest(version="1.1.0"), "/src/skill.json")
        self.store.upsert_skill(_manifest(version="1.1.0"), "/src/skill.json")

        state = self.store.load_state()
        self.assertEqual(len(state.skills), 1)
        record = state.skills[0]
        self.assertEqual(record.manifest.version, "1.1.0")
        self.assertEqual(record.manifest_source, "git@github.com:acme/hello.git")
        self.assertEqual(record.deployed_products, {"codex"})
        self.assertEqual(record.enabled_products, {"codex"})

    def test_enabled_requires_deployed(self) -> None:
        self.store.upsert_skill(_manifest(), "/src/skill.json")
        with self.assertRaises(ValidationError):
            self.store.set_enabled("hello-world", "codex", True)
        self.assertEqual(self.store.get_skill("hello-world").enabled_products, set())

        self.store.mark_deployed("hello-world", "codex", InstallMode.SYMLINK)
        self.store.set_enabled("hello-world", "codex", True)
        self.store.mark_undeployed("hello-world", "codex")

        record = self.store.get_skill("hello-world")
        self.assertEqual(record.deployed_products, set())
        self.assertEqual(record.enabled_products, set())
        self.assertEqual(record.last_deploy_mode_by_product, {})

    def test_mark_deployed_rejects_unresolved_modes(self) -> None:
        self.store.upsert_skill(_manifest(), "/src/skill.json")
        for mode in (InstallMode.AUTO, InstallMode.UNKNOWN):
            with self.assertRaises(UnsupportedInstallModeError):
                self.store.mark_deployed("hello-world", "codex", mode)

    def test_mutators_raise_for_unknown_skill(self) -> None:
        with self.assertRaises(SkillNotFoundError):
            self.store.mark_deployed("nope", "codex", InstallMode.COPY)
        with self.assertRaises(SkillNotFoundError):
            self.store.set_enabled("nope", "codex", False)
        with self.assertRaises(SkillNotFoundError):
            self.store.set_has_update("nope", True)
        with self.assertRaises(SkillNotFoundError):
            self.store.remove_skill("nope")
        with self.assertRaises(SkillNotFoundError):
            self.store.get_skill("nope")

    def test_product_config_path_blank_clears(self) -> None:
        self.store.set_product_config_path("cursor", "  /tmp/settings.json  ")
        self.assertEqual(self.store.load_state().product_config_path_overrides, {"cursor": "/tmp/settings.json"})
        self.store.set_product_config_path("cursor", "   ")
        self.assertEqual(self.store.load_state().product_config_path_overrides, {})

    def test_updated_at_never_goes_backwards(self) -> None:
        state = self.store.load_state()
        future = datetime(2999, 1, 1, tzinfo=timezone.utc)
        state.updated_at = future
        self.store.save_state(state)

        self.store.upsert_skill(_manifest(), "/src/skill.json")
        self.assertEqual(self.store.load_state().updated_at, future)

    def test_file_uses_canonical_sorted_json(self) -> None:
        self.store.upsert_skill(_manifest(), "/src/skill.json")
        self.store.mark_deployed("hello-world", "codex", InstallMode.CONFIG_PATCH)

        text = self.store.state_file.read_text(encoding="utf-8")
        raw = json.loads(text)
        self.assertEqual(list(raw.keys()), sorted(raw.keys()))
        skill = raw["skills"][0]
        self.assertEqual(skill["deployedProducts"], ["codex"])
        self.assertEqual(skill["lastDeployModeByProduct"], {"codex": "configPatch"})
        self.assertNotIn("installedProducts", skill)
        self.assertTrue(raw["updatedAt"].endswith("Z"))
        self.assertTrue(self.store.lock_path.exists())

    def test_failed_rename_keeps_previous_file(self) -> None:
        self.store.upsert_skill(_manifest(), "/src/skill.json")
        before = self.store.state_file.read_bytes()

        with patch("skillhub.store.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(StateError):
                self.store.set_has_update("hello-world", True)

        self.assertEqual(self.store.state_file.read_bytes(), before)
        leftovers = [p.name for p in self.root.iterdir() if p.name.endswith(".tmp")]
        self.assertEqual(leftovers, [])
        self.assertFalse(self.store.get_skill("hello-world").has_update)

    def test_corrupted_file_raises(self) -> None:
        self.store.state_file.write_text("{not json", encoding="utf-8")
        with self.assertRaises(StateCorruptedError):
            self.store.load_state()

        self.store.state_file.write_text(json.dumps({"skills": [{"manifest": {"id": "x"}}]}), encoding="utf-8")
        with self.assertRaises(StateCorruptedError):
            self.store.load_state()

    def test_save_state_never_moves_updated_at_backwards(self) -> None:
        stale = self.store.load_state()
        stale.updated_at = datetime(2000, 1, 1, tzinfo=timezone.utc)
        self.store.upsert_skill(_manifest(), "/src/skill.json")
        stored = self.store.load_state().updated_at

        self.store.save_state(stale)

        self.assertGreaterEqual(self.store.load_state().updated_at, stored)

    def test_save_state_overwrites_corrupted_file(self) -> None:
        self.store.state_file.write_text("{not json", encoding="utf-8")
        self.store.save_state(SkillHubState())
        self.assertEqual(self.store.load_state().skills, [])

    @unittest.skipUnless("fork" in multiprocessing.get_all_start_methods(), "needs fork start method")
    def test_concurrent_writers_keep_every_record(self) -> None:
        ctx = multiprocessing.get_context("fork")
        workers, per_worker = 4, 15
        procs = [
            ctx.Process(target=_upsert_many, args=(str(self.store.state_file), w, per_worker))
            for w in range(workers)
        ]
        for p in procs:
            p.start()
        for p in procs:
            p.join(timeout=60)

        self.assertEqual([p.exitcode for p in procs], [0] * workers)
        ids = {r.id for r in self.store.load_state().skills}
        self.assertEqual(len(ids), workers * per_worker)
        self.assertIn("w3-s14", ids)

    def test_remove_skill(self) -> None:
        self.store.upsert_skill(_manifest(), "/src/skill.json")
        self.store.upsert_skill(_manifest("other"), "/other/skill.json")
        self.store.remove_skill("hello-world")
        self.assertEqual([r.id for r in self.store.load_state().skills], ["other"])


if __name__ == "__main__":
    unittest.main()
