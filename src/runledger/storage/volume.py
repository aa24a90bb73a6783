"""Run directory volume checks and the exclusive attach lock."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock, Timeout

from runledger.orchestrator.errors import LeaseConflict, UnsupportedVolume

logger = logging.getLogger(__name__)

MOUNTS_PATH = Path("/proc/mounts")
ATTACH_LOCK_NAME = "attach.lock"

# Filesystems where advisory locks and fsync ordering are not trustworthy
# across hosts, so a second host could attach the same run directory.
NETWORK_FILESYSTEMS: frozenset[str] = frozenset(
    {
        "nfs",
        "nfs4",
        "cifs",
        "smb",
        "smb2",
        "smb3",
        "smbfs",
        "fuse.sshfs",
        "sshfs",
        "9p",
        "afs",
        "ceph",
        "glusterfs",
        "fuse.glusterfs",
        "lustre",
        "fuse.s3fs",
        "fuse.gcsfuse",
    },
)


@dataclass(slots=True, frozen=True)
class MountInfo:
    mount_point: str
    fs_type: str


def detect_mount(path: Path, *, mounts_path: Path = MOUNTS_PATH) -> MountInfo | None:
    """Return the mount holding ``path`` using the longest matching mount point."""

    try:
        content = mounts_path.read_text(encoding="utf-8")
    except OSError:
        return None

    target = str(path.resolve())
    best: MountInfo | None = None
    for line in content.splitlines():
        parts = line.split()
        if len(parts) < 3:  # noqa: PLR2004
            continue
        mount_point = parts[1].replace("\\040", " ")
        if not _is_within(target, mount_point):
            continue
        if best is None or len(mount_point) >= len(best.mount_point):
            best = MountInfo(mount_point=mount_point, fs_type=parts[2].lower())
    return best


def ensure_supported_volume(
    run_dir: Path,
    *,
    allow_network_volumes: bool,
    mounts_path: Path = MOUNTS_PATH,
) -> None:
    """Reject run directories on network filesystems unless explicitly allowed."""

    mount = detect_mount(run_dir, mounts_path=mounts_path)
    if mount is None or mount.fs_type not in NETWORK_FILESYSTEMS:
        return
    if allow_network_volumes:
        logger.warning(
            "Run directory %s is on network filesystem %s; single attach is not guaranteed.",
            run_dir,
            mount.fs_type,
        )
        return
    raise UnsupportedVolume(
        f"Run directory {run_dir} is on unsupported filesystem {mount.fs_type!r} "
        f"(mounted at {mount.mount_point}). Set RUNLEDGER_ALLOW_NETWORK_VOLUMES=true to override.",
    )


class AttachLock:
    """Exclusive, non-blocking OS lock over ``<run_dir>/attach.lock``."""

    def __init__(self, run_dir: Path) -> None:
        self.path = run_dir / ATTACH_LOCK_NAME
        self._lock = FileLock(str(self.path), timeout=0, thread_local=False)

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def acquire(self, *, run_id: str) -> None:
        try:
            self._lock.acquire(timeout=0)
        except Timeout as error:
            raise LeaseConflict(
                f"Run {run_id} is attached by another process ({self.path} is locked).",
            ) from error

    def release(self) -> None:
        if self._lock.is_locked:
            self._lock.release(force=True)


def _is_within(target: str, mount_point: str) -> bool:
    if mount_point == "/":
        return True
    return target == mount_point or target.startswith(mount_point.rstrip("/") + "/")
