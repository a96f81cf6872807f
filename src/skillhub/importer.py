from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import httpx

from .config import DEFAULT_TIMEOUT_S
from .errors import InvalidManifestError
from .models import SkillManifest, load_manifest, parse_manifest
from .remotes import load_gitpython, parse_git_remote

logger = logging.getLogger(__name__)

MANIFEST_FILENAMES = ("skill.json", "manifest.json")


class SourceKind(str, Enum):
    LOCAL = "local"
    HTTP = "http"
    GIT = "git"


@dataclass(frozen=True)
class ResolvedSkill:
    manifest: SkillManifest
    directory: Path
    manifest_path: Path
    source_kind: SourceKind
    source: str


def find_manifest_file(directory: Path) -> Path | None:
    for name in MANIFEST_FILENAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


class Importer:
    """
    Turns a user-supplied source into a manifest plus a directory to stage.

    Sources are tried as a git remote first, then an http(s) manifest URL, then
    a local manifest file or directory.
    """

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        git_hosts: Iterable[str] = (),
    ) -> None:
        self._owns_http = http_client is None
        self._http = http_client if http_client is not None else httpx.Client(timeout=timeout_s, follow_redirects=True)
        self.git_hosts = tuple(git_hosts)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "Importer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def resolve(self, source: str, workdir: Path) -> ResolvedSkill:
        raw = source.strip()
        if not raw:
            raise InvalidManifestError("Source must not be empty")

        remote = parse_git_remote(raw, self.git_hosts)
        if remote is not None:
            return self._resolve_git(raw, workdir)
        if raw.startswith(("http://", "https://")):
            return self._resolve_http(raw, workdir)
        return self._resolve_local(raw)

    def _resolve_local(self, source: str) -> ResolvedSkill:
        path = Path(source).expanduser().resolve()
        if path.is_dir():
            manifest_path = find_manifest_file(path)
            if manifest_path is None:
                raise InvalidManifestError(
                    f"No {' or '.join(MANIFEST_FILENAMES)} found in {path}", path=path
                )
        elif path.is_file():
            manifest_path = path
        else:
            raise InvalidManifestError(f"Manifest not found: {path}", path=path)

        manifest = load_manifest(manifest_path)
        return ResolvedSkill(manifest, manifest_path.parent, manifest_path, SourceKind.LOCAL, str(manifest_path))

    def _resolve_http(self, url: str, workdir: Path) -> ResolvedSkill:
        try:
            resp = self._http.get(url)
        except httpx.HTTPError as e:
            raise InvalidManifestError(f"Request failed for {url}: {e}") from e
        if resp.status_code >= 400:
            raise InvalidManifestError(f"HTTP {resp.status_code} fetching manifest {url}")

        try:
            raw = resp.json()
        except ValueError as e:
            raise InvalidManifestError(f"Manifest at {url} is not valid JSON") from e
        manifest = parse_manifest(raw)

        directory = workdir / manifest.id
        directory.mkdir(parents=True, exist_ok=True)
        manifest_path = directory / MANIFEST_FILENAMES[0]
        manifest_path.write_text(json.dumps(raw, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        logger.info("Fetched manifest %s from %s", manifest.id, url)
        return ResolvedSkill(manifest, directory, manifest_path, SourceKind.HTTP, url)

    def _resolve_git(self, url: str, workdir: Path) -> ResolvedSkill:
        git = load_gitpython()
        checkout = workdir / "checkout"
        try:
            # Not shallow: update checks compare ancestry in this clone.
            git.Repo.clone_from(url, checkout)
        except (git.exc.GitError, OSError) as e:
            raise InvalidManifestError(f"Could not clone {url}: {e}") from e

        manifest_path = find_manifest_file(checkout)
        if manifest_path is None:
            raise InvalidManifestError(f"No {' or '.join(MANIFEST_FILENAMES)} at the root of {url}")
        manifest = load_manifest(manifest_path)
        logger.info("Cloned %s for skill %s", url, manifest.id)
        return ResolvedSkill(manifest, checkout, manifest_path, SourceKind.GIT, url)
