import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import httpx

from skillhub.errors import InvalidManifestError
from skillhub.importer import Importer, SourceKind

MANIFEST = {"id": "hello-world", "name": "Hello World", "version": "1.0.0", "summary": "Says hello"}


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestLocalSources(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.importer = Importer(_client(lambda request: httpx.Response(500)))

    def tearDown(self) -> None:
        self.importer.close()
        self._td.cleanup()

    def test_directory_with_skill_json(self) -> None:
        skill = self.root / "hello"
        skill.mkdir()
        (skill / "skill.json").write_text(json.dumps(MANIFEST), encoding="utf-8")
        (skill / "manifest.json").write_text(json.dumps({**MANIFEST, "id": "other"}), encoding="utf-8")

        resolved = self.importer.resolve(str(skill), self.root / "work")

        self.assertIs(resolved.source_kind, SourceKind.LOCAL)
        self.assertEqual(resolved.manifest.id, "hello-world")
        self.assertEqual(resolved.manifest_path, (skill / "skill.json").resolve())
        self.assertEqual(resolved.directory, skill.resolve())
        self.assertEqual(resolved.source, str((skill / "skill.json").resolve()))

    def test_manifest_json_fallback_and_direct_file(self) -> None:
        skill = self.root / "hello"
        skill.mkdir()
        manifest_path = skill / "manifest.json"
        manifest_path.write_text(json.dumps(MANIFEST), encoding="utf-8")

        self.assertEqual(self.importer.resolve(str(skill), self.root).manifest_path, manifest_path.resolve())
        self.assertEqual(self.importer.resolve(str(manifest_path), self.root).directory, skill.resolve())

    def test_missing_and_empty_sources(self) -> None:
        empty = self.root / "empty"
        empty.mkdir()
        for source in ("", "   ", str(self.root / "nope"), str(empty)):
            with self.assertRaises(InvalidManifestError):
                self.importer.resolve(source, self.root)

    def test_invalid_manifest_file(self) -> None:
        bad = self.root / "skill.json"
        bad.write_text(json.dumps({"id": "Bad Id"}), encoding="utf-8")
        with self.assertRaises(InvalidManifestError):
            self.importer.resolve(str(bad), self.root)


class TestHttpSources(unittest.TestCase):
    def test_downloads_manifest_into_workdir(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=MANIFEST)

        with tempfile.TemporaryDirectory() as td, Importer(_client(handler)) as importer:
            resolved = importer.resolve("https://skills.example.com/hello/skill.json", Path(td))

            self.assertIs(resolved.source_kind, SourceKind.HTTP)
            self.assertEqual(resolved.directory, Path(td) / "hello-world")
            self.assertEqual(json.loads(resolved.manifest_path.read_text(encoding="utf-8")), MANIFEST)
            self.assertEqual(resolved.source, "https://skills.example.com/hello/skill.json")
        self.assertEqual(seen, ["https://skills.example.com/hello/skill.json"])

    def test_http_failures_are_invalid_manifest(self) -> None:
        def not_found(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="nope")

        def not_json(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with tempfile.TemporaryDirectory() as td:
            for handler in (not_found, not_json, unreachable):
                with Importer(_client(handler)) as importer:
                    with self.assertRaises(InvalidManifestError):
                        importer.resolve("https://skills.example.com/hello/skill.json", Path(td))


class TestGitSources(unittest.TestCase):
    def test_git_remotes_are_cloned(self) -> None:
        importer = Importer(_client(lambda request: httpx.Response(500)), git_hosts=["git.example.com"])
        with patch.object(Importer, "_resolve_git", return_value="cloned") as mock_git:
            self.assertEqual(importer.resolve("git@github.com:acme/hello.git", Path("/tmp/w")), "cloned")
            self.assertEqual(importer.resolve("https://git.example.com/acme/hello", Path("/tmp/w")), "cloned")
        self.assertEqual(mock_git.call_count, 2)
        self.assertEqual(mock_git.call_args.args, ("https://git.example.com/acme/hello", Path("/tmp/w")))


if __name__ == "__main__":
    unittest.main()
