from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from runledger.orchestrator.errors import LeaseConflict, UnsupportedVolume
from runledger.storage.volume import AttachLock, detect_mount, ensure_supported_volume

pytestmark = [
    allure.epic("Run State"),
    allure.feature("Run Directory Volume"),
]


def _mounts(tmp_path: Path, nested: Path, fs_type: str) -> Path:
    mounts = tmp_path / "mounts"
    mounts.write_text(
        "\n".join(
            [
                "/dev/root / ext4 rw,relatime 0 0",
                f"server:/export {nested} {fs_type} rw,vers=4.2 0 0",
                "garbage",
            ],
        )
        + "\n",
        encoding="utf-8",
    )
    return mounts


def test_detect_mount_picks_longest_mount_point(tmp_path: Path) -> None:
    shared = tmp_path / "shared"
    mounts = _mounts(tmp_path, shared.resolve(), "nfs4")

    inside = detect_mount(shared / "runs" / "run-1", mounts_path=mounts)
    outside = detect_mount(tmp_path / "local", mounts_path=mounts)

    assert inside is not None
    assert inside.fs_type == "nfs4"
    assert outside is not None
    assert outside.fs_type == "ext4"


def test_detect_mount_without_mount_table(tmp_path: Path) -> None:
    assert detect_mount(tmp_path, mounts_path=tmp_path / "absent") is None


def test_network_volume_is_rejected(tmp_path: Path) -> None:
    shared = tmp_path / "shared"
    mounts = _mounts(tmp_path, shared.resolve(), "nfs")

    with pytest.raises(UnsupportedVolume, match="unsupported filesystem 'nfs'"):
        ensure_supported_volume(shared / "run-1", allow_network_volumes=False, mounts_path=mounts)


def test_network_volume_override_warns(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    shared = tmp_path / "shared"
    mounts = _mounts(tmp_path, shared.resolve(), "cifs")
    caplog.set_level(logging.WARNING)

    ensure_supported_volume(shared / "run-1", allow_network_volumes=True, mounts_path=mounts)

    assert "single attach is not guaranteed" in caplog.text


def test_local_volume_is_accepted(tmp_path: Path) -> None:
    mounts = _mounts(tmp_path, (tmp_path / "shared").resolve(), "nfs")

    ensure_supported_volume(tmp_path / "local", allow_network_volumes=False, mounts_path=mounts)


def test_attach_lock_is_exclusive(tmp_path: Path) -> None:
    first = AttachLock(tmp_path)
    second = AttachLock(tmp_path)

    first.acquire(run_id="run-1")
    try:
        with pytest.raises(LeaseConflict, match="attached by another process"):
            second.acquire(run_id="run-1")
        assert first.is_locked is True
        assert second.is_locked is False
    finally:
        first.release()

    second.acquire(run_id="run-1")
    second.release()
    second.release()
    assert second.is_locked is False
