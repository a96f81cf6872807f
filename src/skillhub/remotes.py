from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from types import ModuleType
from urllib.parse import urlsplit

from .errors import GitInspectionError

DEFAULT_GIT_HOSTS = ("github.com", "gitlab.com", "bitbucket.org", "codeberg.org")

_SCP_RE = re.compile(r"^(?P<user>[A-Za-z0-9._-]+)@(?P<host>[A-Za-z0-9.-]+):(?P<path>[^/\s][^\s]*)$")
_SSH_SCHEMES = {"ssh", "git", "git+ssh"}
_HTTP_SCHEMES = {"http", "https"}


@dataclass(frozen=True)
class GitRemote:
    url: str
    scheme: str  # "scp" for user@host:path
    host: str
    path: str


def parse_git_remote(source: str | None, extra_hosts: Iterable[str] = ()) -> GitRemote | None:
    """
    Classify ``source`` as a git remote, or return None.

    ssh-style locators are accepted for any host. http(s) URLs only count when
    they end in ``.git`` or point at ``owner/repo`` on a known git host.
    """
    if not source:
        return None
    raw = source.strip()
    if not raw:
        return None

    m = _SCP_RE.match(raw)
    if m:
        return GitRemote(url=raw, scheme="scp", host=m.group("host").lower(), path=m.group("path"))

    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    path = parts.path.strip("/")
    if not host or not path:
        return None

    if scheme in _SSH_SCHEMES:
        return GitRemote(url=raw, scheme=scheme, host=host, path=path)

    if scheme in _HTTP_SCHEMES:
        if path.endswith(".git"):
            return GitRemote(url=raw, scheme=scheme, host=host, path=path)
        allowed = {h.lower() for h in DEFAULT_GIT_HOSTS} | {h.strip().lower() for h in extra_hosts if h.strip()}
        segments = path.split("/")
        if host in allowed and len(segments) == 2 and all(segments):
            return GitRemote(url=raw, scheme=scheme, host=host, path=path)
    return None


def is_git_remote(source: str | None, extra_hosts: Iterable[str] = ()) -> bool:
    return parse_git_remote(source, extra_hosts) is not None


def load_gitpython() -> ModuleType:
    """Import GitPython on first use. Importing it fails when no git executable is installed."""
    try:
        import git
    except ImportError as e:
        raise GitInspectionError(f"git is not available: {e}") from e
    return git
