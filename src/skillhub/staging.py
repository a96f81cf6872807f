from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import time
import uuid
from datetime import datetime
from pathlib import Path

from .errors import FilesystemError, InvalidManifestError
from .models import format_timestamp, utcnow

logger = logging.getLogger(__name__)

TMP_PREFIX = ".skillhub-stage-"
_BACKUP_RE = re.compile(r"^\.(?P<skill_id>[a-z0-9][a-z0-9_-]*)\.backup-(?P<stamp>\d+)-[0-9a-f]+$")


def remove_path(path: Path) -> bool:
    """Remove a file, symlink (without following it) or directory tree. Returns False if nothing was there."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def _backup_sibling(skills_root: Path, skill_id: str) -> Path:
    return skills_root / f".{skill_id}.backup-{time.time_ns()}-{uuid.uuid4().hex[:8]}"


def _backups_for(skills_root: Path, skill_id: str) -> list[Path]:
    found: list[tuple[int, Path]] = []
    if not skills_root.is_dir():
        return []
    for p in skills_root.iterdir():
        m = _BACKUP_RE.match(p.name)
        if m and m.group("skill_id") == skill_id:
            found.append((int(m.group("stamp")), p))
    found.sort()
    return [p for _, p in found]


def recover_interrupted(skills_root: Path, skill_id: str) -> Path | None:
    """
    Undo a stage that died between moving the old tree aside and moving the new one in.

    When ``skills/<id>`` is missing but backup siblings exist, the newest one is
    renamed back into place. Returns the restored path, if any.
    """
    dest = skills_root / skill_id
    if os.path.lexists(dest):
        return None
    backups = _backups_for(skills_root, skill_id)
    if not backups:
        return None
    newest = backups[-1]
    try:
        os.rename(newest, dest)
    except OSError as e:
        raise FilesystemError(f"Could not restore {newest} to {dest}: {e}", path=dest, skill_id=skill_id) from e
    logger.warning("Recovered interrupted staging of %s from %s", skill_id, newest.name)
    return dest


def stage_skill(skills_root: Path, skill_id: str, source_dir: Path) -> Path:
    """
    Copy ``source_dir`` into ``skills_root/<skill_id>``, replacing any previous payload.

    The copy is built in a hidden temporary sibling first. The previous payload
    is moved aside and only discarded once the new tree is in place; if the final
    rename fails the previous payload is moved back.
    """
    source = Path(source_dir).expanduser()
    if not source.is_dir():
        raise InvalidManifestError(f"Skill source directory not found: {source}", path=source, skill_id=skill_id)

    skills_root = Path(skills_root)
    dest = skills_root / skill_id
    if dest.exists() and source.resolve() == dest.resolve():
        logger.debug("Skill %s already staged at %s", skill_id, dest)
        return dest

    try:
        skills_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Could not create skills directory: {skills_root}", path=skills_root) from e

    recover_interrupted(skills_root, skill_id)

    with tempfile.TemporaryDirectory(prefix=f"{TMP_PREFIX}{skill_id}-", dir=skills_root) as td:
        payload = Path(td) / skill_id
        try:
            shutil.copytree(source, payload, symlinks=True)
        except (OSError, shutil.Error) as e:
            raise FilesystemError(f"Could not copy {source}: {e}", path=source, skill_id=skill_id) from e

        backup = _backup_sibling(skills_root, skill_id)
        moved_aside = False
        try:
            os.rename(dest, backup)
            moved_aside = True
        except FileNotFoundError:
            pass
        except OSError as e:
            raise FilesystemError(f"Could not move aside {dest}: {e}", path=dest, skill_id=skill_id) from e

        try:
            os.replace(payload, dest)
        except OSError as e:
            if moved_aside:
                os.rename(backup, dest)
            raise FilesystemError(f"Could not stage {skill_id} into {dest}: {e}", path=dest, skill_id=skill_id) from e

    if moved_aside:
        try:
            remove_path(backup)
        except OSError as e:
            logger.warning("Could not delete staging backup %s: %s", backup, e)
    logger.info("Staged %s from %s", skill_id, source)
    return dest


def unstage(skills_root: Path, skill_id: str) -> bool:
    dest = Path(skills_root) / skill_id
    try:
        removed = remove_path(dest)
    except OSError as e:
        raise FilesystemError(f"Could not remove {dest}: {e}", path=dest, skill_id=skill_id) from e
    if removed:
        logger.info("Unstaged %s", skill_id)
    return removed


def find_orphans(skills_root: Path) -> list[Path]:
    """Leftover temp and backup siblings from interrupted staging runs."""
    skills_root = Path(skills_root)
    if not skills_root.is_dir():
        return []
    return sorted(
        p for p in skills_root.iterdir() if p.name.startswith(TMP_PREFIX) or _BACKUP_RE.match(p.name)
    )


def collect_garbage(skills_root: Path) -> list[Path]:
    """Restore what can still be recovered, then delete every remaining orphan. Returns deleted paths."""
    skills_root = Path(skills_root)
    for orphan in find_orphans(skills_root):
        m = _BACKUP_RE.match(orphan.name)
        if m:
            recover_interrupted(skills_root, m.group("skill_id"))

    removed: list[Path] = []
    for orphan in find_orphans(skills_root):
        try:
            remove_path(orphan)
        except OSError as e:
            raise FilesystemError(f"Could not delete {orphan}: {e}", path=orphan) from e
        removed.append(orphan)
    return removed


def backup_if_exists(
    target: Path,
    backups_root: Path,
    product_id: str,
    skill_id: str,
    now: datetime | None = None,
) -> Path | None:
    """
    Move an existing product artifact to ``backups/<timestamp>/<product>/<skill>``.

    A numeric suffix is appended to the timestamp directory when that backup
    path is already taken, so earlier backups are never overwritten.
    """
    target = Path(target)
    if not os.path.lexists(target):
        return None

    stamp = format_timestamp(now or utcnow()).replace(":", "-")
    candidate = Path(backups_root) / stamp / product_id / skill_id
    n = 0
    while os.path.lexists(candidate):
        n += 1
        candidate = Path(backups_root) / f"{stamp}.{n}" / product_id / skill_id

    try:
        candidate.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(target), str(candidate))
    except OSError as e:
        raise FilesystemError(
            f"Could not back up {target}: {e}", path=target, skill_id=skill_id, product_id=product_id
        ) from e
    logger.info("Backed up %s to %s", target, candidate)
    return candidate
