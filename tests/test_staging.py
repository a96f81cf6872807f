import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from skillhub.errors import FilesystemError, InvalidManifestError
from skillhub.staging import (
    backup_if_exists,
    collect_garbage,
    find_orphans,
    recover_interrupted,
    stage_skill,
    unstage,
)


def _make_source(root: Path, files: dict[str, str]) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    for rel, content in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
    return root


class TestStageSkill(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.skills_root = self.root / "skills"

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_stage_and_restage_replace_payload(self) -> None:
        v1 = _make_source(self.root / "v1", {"skill.json": "{}", "old.txt": "old"})
        v2 = _make_source(self.root / "v2", {"skill.json": "{}", "nested/new.txt": "new"})

        dest = stage_skill(self.skills_root, "demo", v1)
        self.assertEqual(dest, self.skills_root / "demo")
        self.assertEqual((dest / "old.txt").read_text(encoding="utf-8"), "old")

        stage_skill(self.skills_root, "demo", v2)
        self.assertFalse((dest / "old.txt").exists())
        self.assertEqual((dest / "nested" / "new.txt").read_text(encoding="utf-8"), "new")
        self.assertEqual(find_orphans(self.skills_root), [])

    def test_failed_final_move_restores_previous_payload(self) -> None:
        v1 = _make_source(self.root / "v1", {"a.bin": "original bytes"})
        v2 = _make_source(self.root / "v2", {"a.bin": "replacement"})
        dest = stage_skill(self.skills_root, "demo", v1)
        before = (dest / "a.bin").read_bytes()

        with patch("skillhub.staging.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(FilesystemError):
                stage_skill(self.skills_root, "demo", v2)

        self.assertEqual((dest / "a.bin").read_bytes(), before)
        self.assertEqual(find_orphans(self.skills_root), [])

    def test_missing_source_is_invalid_manifest(self) -> None:
        missing = self.root / "missing"
        with self.assertRaises(InvalidManifestError) as ctx:
            stage_skill(self.skills_root, "demo", missing)
        self.assertEqual(ctx.exception.path, missing)

    def test_staging_from_destination_is_noop(self) -> None:
        src = _make_source(self.root / "src", {"skill.json": "{}"})
        dest = stage_skill(self.skills_root, "demo", src)
        marker = dest / "marker.txt"
        marker.write_text("x", encoding="utf-8")

        self.assertEqual(stage_skill(self.skills_root, "demo", dest), dest)
        self.assertTrue(marker.exists())

    def test_recover_interrupted_restores_newest_backup(self) -> None:
        _make_source(self.skills_root / ".demo.backup-100-aaaaaaaa", {"v.txt": "older"})
        _make_source(self.skills_root / ".demo.backup-200-bbbbbbbb", {"v.txt": "newer"})

        restored = recover_interrupted(self.skills_root, "demo")
        self.assertEqual(restored, self.skills_root / "demo")
        self.assertEqual((self.skills_root / "demo" / "v.txt").read_text(encoding="utf-8"), "newer")
        self.assertIsNone(recover_interrupted(self.skills_root, "demo"))

    def test_collect_garbage_recovers_then_deletes_orphans(self) -> None:
        _make_source(self.skills_root / ".demo.backup-100-aaaaaaaa", {"v.txt": "kept"})
        _make_source(self.skills_root / ".skillhub-stage-demo-x1y2", {"partial.txt": "x"})
        _make_source(self.skills_root / "other", {"v.txt": "live"})
        _make_source(self.skills_root / ".other.backup-5-cccccccc", {"v.txt": "stale"})

        removed = collect_garbage(self.skills_root)

        self.assertEqual((self.skills_root / "demo" / "v.txt").read_text(encoding="utf-8"), "kept")
        self.assertEqual((self.skills_root / "other" / "v.txt").read_text(encoding="utf-8"), "live")
        self.assertEqual(
            sorted(p.name for p in removed),
            [".other.backup-5-cccccccc", ".skillhub-stage-demo-x1y2"],
        )
        self.assertEqual(find_orphans(self.skills_root), [])

    def test_unstage(self) -> None:
        src = _make_source(self.root / "src", {"skill.json": "{}"})
        stage_skill(self.skills_root, "demo", src)
        self.assertTrue(unstage(self.skills_root, "demo"))
        self.assertFalse(unstage(self.skills_root, "demo"))


class TestBackupIfExists(unittest.TestCase):
    def test_backups_never_overwrite_each_other(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            backups = root / "backups"
            now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

            target = _make_source(root / "product" / "demo", {"f.txt": "first"})
            first = backup_if_exists(target, backups, "codex", "demo", now=now)
            self.assertEqual(first, backups / "2026-01-02T03-04-05.000000Z" / "codex" / "demo")
            self.assertFalse(target.exists())

            _make_source(target, {"f.txt": "second"})
            second = backup_if_exists(target, backups, "codex", "demo", now=now)
            self.assertEqual(second, backups / "2026-01-02T03-04-05.000000Z.1" / "codex" / "demo")
            self.assertEqual((first / "f.txt").read_text(encoding="utf-8"), "first")
            self.assertEqual((second / "f.txt").read_text(encoding="utf-8"), "second")

    def test_missing_target_returns_none(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertIsNone(backup_if_exists(Path(td) / "nope", Path(td) / "backups", "codex", "demo"))

    def test_broken_symlink_is_backed_up(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            link = root / "demo"
            os.symlink(root / "gone", link)
            backup = backup_if_exists(link, root / "backups", "codex", "demo")
            self.assertIsNotNone(backup)
            assert backup is not None
            self.assertTrue(backup.is_symlink())
            self.assertFalse(os.path.lexists(link))


if __name__ == "__main__":
    unittest.main()
