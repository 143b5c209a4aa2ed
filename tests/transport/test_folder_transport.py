"""Tests for the shared-folder transport."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from profilesync.core.config import SyncConfig
from profilesync.transport import create_transport
from profilesync.transport.base import (
    TransportError,
    TransportNotFoundError,
    device_id_from_file_name,
    sync_file_name,
)
from profilesync.transport.local import FolderTransport


@pytest.fixture
def transport(tmp_path: Path) -> FolderTransport:
    return FolderTransport(tmp_path / "shared")


class TestFileNames:
    """Tests for the blob naming helpers."""

    def test_round_trip(self) -> None:
        assert sync_file_name("abc") == "profilesync-abc.enc"
        assert device_id_from_file_name("profilesync-abc.enc") == "abc"

    @pytest.mark.parametrize("name", ["notes.txt", "profilesync-.enc", "profilesync-abc.tmp"])
    def test_foreign_files(self, name: str) -> None:
        assert device_id_from_file_name(name) is None


class TestFolderTransport:
    """Tests for FolderTransport."""

    def test_creates_root(self, tmp_path: Path) -> None:
        root = tmp_path / "a" / "b"
        FolderTransport(root)
        assert root.is_dir()

    def test_upload_and_download(self, transport: FolderTransport) -> None:
        locator = transport.upload("dev1", b"first")
        transport.upload("dev1", b"second")

        assert locator == "profilesync-dev1.enc"
        assert transport.download(locator) == b"second"
        assert transport.download_device("dev1") == b"second"
        assert transport.download_device("other") is None

    def test_no_temporary_files_left(self, transport: FolderTransport) -> None:
        transport.upload("dev1", b"data")
        assert [p.name for p in transport.root.iterdir()] == ["profilesync-dev1.enc"]

    def test_list_ignores_foreign_files(self, transport: FolderTransport) -> None:
        transport.upload("dev1", b"12345")
        transport.upload("dev2", b"1")
        (transport.root / "notes.txt").write_text("hello")
        (transport.root / "profilesync-dir.enc").mkdir()

        files = transport.list()

        assert [f.device_id for f in files] == ["dev1", "dev2"]
        assert files[0].size == 5
        assert files[0].modified_time > 0

    def test_download_missing(self, transport: FolderTransport) -> None:
        with pytest.raises(TransportNotFoundError):
            transport.download("profilesync-gone.enc")

    def test_locator_cannot_escape_root(self, transport: FolderTransport) -> None:
        with pytest.raises(TransportError):
            transport.download("../secrets.txt")

    def test_delete(self, transport: FolderTransport) -> None:
        locator = transport.upload("dev1", b"data")

        assert transport.delete(locator) is True
        assert transport.delete(locator) is False
        assert transport.list() == []

    def test_delete_stale_files(self, transport: FolderTransport) -> None:
        transport.upload("mine", b"x")
        transport.upload("old", b"x")
        transport.upload("fresh", b"x")
        for name in ("mine", "old"):
            os.utime(transport.root / sync_file_name(name), (0, 0))

        deleted = transport.delete_stale_files(30, exclude_device="mine")

        assert deleted == 1
        assert sorted(f.device_id for f in transport.list()) == ["fresh", "mine"]

    def test_test_connection(self, transport: FolderTransport) -> None:
        assert transport.test_connection() is True

    def test_create_transport(self, tmp_path: Path) -> None:
        created = create_transport(SyncConfig(folder_path=str(tmp_path / "sync")))
        assert isinstance(created, FolderTransport)
        assert created.location == str(tmp_path / "sync")

        with pytest.raises(ValueError):
            create_transport(SyncConfig())
