from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .config import SkillHubPaths
from .errors import GitInspectionError
from .models import InstalledSkillRecord
from .remotes import load_gitpython, parse_git_remote
from .store import StateStore

if TYPE_CHECKING:
    from git import Repo

logger = logging.getLogger(__name__)


class UpdateStatus(str, Enum):
    UP_TO_DATE = "up-to-date"
    UPDATE_AVAILABLE = "update-available"
    NOT_TRACKED = "not-tracked"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class UpdateCheckResult:
    skill_id: str
    status: UpdateStatus
    has_update: bool = False
    local_commit: str | None = None
    remote_commit: str | None = None
    branch: str | None = None
    detail: str = ""


@dataclass(frozen=True)
class RemoteRefs:
    heads: dict[str, str] = field(default_factory=dict)  # branch name -> sha
    default_branch: str | None = None


class GitInspector(Protocol):
    def local_head(self, repo_dir: Path) -> tuple[str, str | None]:
        ...

    def ls_remote(self, repo_dir: Path, url: str) -> RemoteRefs:
        ...

    def fetch(self, repo_dir: Path, url: str, branch: str) -> None:
        ...

    def is_ancestor(self, repo_dir: Path, ancestor: str, descendant: str) -> bool:
        ...


def parse_ls_remote(output: str) -> RemoteRefs:
    """Parse ``git ls-remote --symref`` output into branch heads and the default branch."""
    heads: dict[str, str] = {}
    default_branch: str | None = None
    for line in output.splitlines():
        if not line.strip():
            continue
        left, _, ref = line.partition("\t")
        ref = ref.strip()
        if left.startswith("ref: "):
            target = left[len("ref: ") :].strip()
            if ref == "HEAD" and target.startswith("refs/heads/"):
                default_branch = target[len("refs/heads/") :]
            continue
        if ref.startswith("refs/heads/"):
            heads[ref[len("refs/heads/") :]] = left.strip()
    return RemoteRefs(heads=heads, default_branch=default_branch)


class GitPythonInspector:
    def _repo(self, repo_dir: Path) -> Repo:
        git = load_gitpython()
        try:
            return git.Repo(repo_dir)
        except (git.exc.GitError, OSError) as e:
            raise GitInspectionError(f"Not a git repository: {repo_dir}", path=repo_dir) from e

    def local_head(self, repo_dir: Path) -> tuple[str, str | None]:
        repo = self._repo(repo_dir)
        try:
            sha = repo.head.commit.hexsha
            branch = None if repo.head.is_detached else repo.active_branch.name
        except (load_gitpython().exc.GitError, ValueError, TypeError) as e:
            raise GitInspectionError(f"Could not read HEAD in {repo_dir}: {e}", path=repo_dir) from e
        return sha, branch

    def ls_remote(self, repo_dir: Path, url: str) -> RemoteRefs:
        repo = self._repo(repo_dir)
        try:
            output = repo.git.ls_remote("--symref", url)
        except (load_gitpython().exc.GitError, OSError) as e:
            raise GitInspectionError(f"git ls-remote failed for {url}: {e}", path=repo_dir) from e
        return parse_ls_remote(output)

    def fetch(self, repo_dir: Path, url: str, branch: str) -> None:
        repo = self._repo(repo_dir)
        try:
            repo.git.fetch("--quiet", url, f"refs/heads/{branch}")
        except (load_gitpython().exc.GitError, OSError) as e:
            raise GitInspectionError(f"git fetch failed for {url} {branch}: {e}", path=repo_dir) from e

    def is_ancestor(self, repo_dir: Path, ancestor: str, descendant: str) -> bool:
        repo = self._repo(repo_dir)
        try:
            return repo.is_ancestor(ancestor, descendant)
        except (load_gitpython().exc.GitError, OSError) as e:
            raise GitInspectionError(f"Could not compare {ancestor} and {descendant}: {e}", path=repo_dir) from e


class UpdateChecker:
    """Compares each deployed skill's local checkout against its git remote."""

    def __init__(
        self,
        store: StateStore,
        paths: SkillHubPaths,
        inspector: GitInspector | None = None,
        extra_hosts: Iterable[str] = (),
    ) -> None:
        self.store = store
        self.paths = paths
        self.inspector = inspector if inspector is not None else GitPythonInspector()
        self.extra_hosts = tuple(extra_hosts)

    def find_repository(self, record: InstalledSkillRecord) -> Path | None:
        bound = self.paths.skill_dir(record.id).resolve()
        current = Path(record.manifest_path).expanduser().resolve().parent
        if current != bound and not current.is_relative_to(bound):
            current = bound
        while True:
            if (current / ".git").exists():
                return current
            if current == bound or current.parent == current:
                return None
            current = current.parent

    def check(self, record: InstalledSkillRecord) -> UpdateCheckResult:
        remote = parse_git_remote(record.manifest_source, self.extra_hosts)
        if remote is None:
            return UpdateCheckResult(record.id, UpdateStatus.NOT_TRACKED, detail="source is not a git remote")

        repo_dir = self.find_repository(record)
        if repo_dir is None:
            return UpdateCheckResult(record.id, UpdateStatus.UNAVAILABLE, detail="no local git repository")

        try:
            local_sha, local_branch = self.inspector.local_head(repo_dir)
            refs = self.inspector.ls_remote(repo_dir, remote.url)
            branch = local_branch if local_branch in refs.heads else refs.default_branch
            if branch is None or branch not in refs.heads:
                return UpdateCheckResult(
                    record.id,
                    UpdateStatus.UNAVAILABLE,
                    local_commit=local_sha,
                    detail="remote has no matching branch",
                )
            remote_sha = refs.heads[branch]

            def result(status: UpdateStatus, detail: str) -> UpdateCheckResult:
                return UpdateCheckResult(
                    record.id,
                    status,
                    has_update=status is UpdateStatus.UPDATE_AVAILABLE,
                    local_commit=local_sha,
                    remote_commit=remote_sha,
                    branch=branch,
                    detail=detail,
                )

            if remote_sha == local_sha:
                return result(UpdateStatus.UP_TO_DATE, "same commit")

            self.inspector.fetch(repo_dir, remote.url, branch)
            if self.inspector.is_ancestor(repo_dir, local_sha, remote_sha):
                return result(UpdateStatus.UPDATE_AVAILABLE, "behind remote")
            if self.inspector.is_ancestor(repo_dir, remote_sha, local_sha):
                return result(UpdateStatus.UP_TO_DATE, "ahead of remote")
            return result(UpdateStatus.UPDATE_AVAILABLE, "diverged from remote")
        except GitInspectionError as e:
            return UpdateCheckResult(record.id, UpdateStatus.UNAVAILABLE, detail=str(e))

    def run(self) -> list[UpdateCheckResult]:
        results: list[UpdateCheckResult] = []
        for record in self.store.load_state().skills:
            if not record.deployed_products:
                continue
            res = self.check(record)
            if res.status is not UpdateStatus.UNAVAILABLE:
                self.store.set_has_update(record.id, res.has_update)
            logger.info("Update check %s: %s (%s)", record.id, res.status.value, res.detail)
            results.append(res)
        return results
