"""Tests for scp_publisher/transfer.py — TransferItem and Uploader."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from scp_publisher.connection import Session
from scp_publisher.exceptions import ConnectionError, PathError, TransportError
from scp_publisher.transfer import TransferItem, TransferStatus, Uploader

from conftest import ROOT, FakeSFTP


@pytest.fixture()
def uploader(session: Session, workspace: Path) -> Uploader:
    return Uploader(session, ROOT, workspace=workspace)


# ---------------------------------------------------------------------------
# TransferItem unit tests
# ---------------------------------------------------------------------------


class TestTransferItem:
    def test_initial_status_is_pending(self) -> None:
        item = TransferItem(source_path="/ws/a.jar", dest_path="/srv/a.jar", file_size=1024)
        assert item.status == TransferStatus.PENDING

    def test_progress_fraction_zero_when_no_bytes(self) -> None:
        item = TransferItem(source_path="/ws/a.jar", dest_path="/srv/a.jar", file_size=1024)
        assert item.progress_fraction == 0.0

    def test_progress_fraction_complete(self) -> None:
        item = TransferItem(source_path="/ws/a.jar", dest_path="/srv/a.jar", file_size=1024)
        item.bytes_transferred = 1024
        assert item.progress_fraction == pytest.approx(1.0)

    def test_progress_fraction_zero_size_file(self) -> None:
        """Zero-size files should not cause a ZeroDivisionError."""
        item = TransferItem(source_path="/ws/empty", dest_path="/srv/empty", file_size=0)
        assert item.progress_fraction == 1.0

    def test_speed_zero_before_start(self) -> None:
        item = TransferItem(source_path="/ws/a.jar", dest_path="/srv/a.jar", file_size=10)
        assert item.speed_mbps == 0.0

    def test_speed_from_elapsed_time(self) -> None:
        item = TransferItem(source_path="/ws/a.jar", dest_path="/srv/a.jar", file_size=0)
        item.start_time = time.monotonic() - 2.0
        item.end_time = item.start_time + 2.0
        item.bytes_transferred = 4 * 1024 * 1024
        assert item.speed_mbps == pytest.approx(2.0)

    def test_id_is_unique(self) -> None:
        items = [TransferItem(source_path=f"/f{i}", dest_path=f"/r{i}", file_size=0) for i in range(5)]
        assert len({item.id for item in items}) == 5


# ---------------------------------------------------------------------------
# Uploader
# ---------------------------------------------------------------------------


class TestUploadFile:
    def test_flattened_upload(
        self, uploader: Uploader, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        items = uploader.upload("builds/42", workspace / "build" / "libs" / "app.jar")
        assert [i.status for i in items] == [TransferStatus.COMPLETE]
        assert fake_sftp.files[f"{ROOT}/builds/42/app.jar"] == b"jar-bytes"
        assert items[0].bytes_transferred == len(b"jar-bytes")

    def test_keep_hierarchy(
        self, uploader: Uploader, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        uploader.upload("builds", workspace / "build" / "libs" / "app.jar", keep_hierarchy=True)
        assert fake_sftp.files[f"{ROOT}/builds/build/libs/app.jar"] == b"jar-bytes"

    def test_keep_hierarchy_at_workspace_root(
        self, uploader: Uploader, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        uploader.upload("docs", workspace / "README.txt", keep_hierarchy=True)
        assert fake_sftp.files[f"{ROOT}/docs/README.txt"] == b"readme"

    def test_empty_folder_uploads_into_root(
        self, uploader: Uploader, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        uploader.upload("", workspace / "README.txt")
        assert f"{ROOT}/README.txt" in fake_sftp.files

    def test_existing_file_is_overwritten(
        self, uploader: Uploader, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        fake_sftp.add_file(f"{ROOT}/README.txt", b"old contents")
        uploader.upload("", workspace / "README.txt")
        assert fake_sftp.files[f"{ROOT}/README.txt"] == b"readme"

    def test_large_file_is_chunked(
        self, session: Session, tmp_path: Path, fake_sftp: FakeSFTP
    ) -> None:
        big = tmp_path / "big.bin"
        big.write_bytes(b"x" * (600 * 1024))
        progress: list[int] = []
        up = Uploader(session, ROOT, on_progress=lambda item: progress.append(item.bytes_transferred))
        up.upload("bin", big)
        assert progress == [256 * 1024, 512 * 1024, 600 * 1024]
        assert len(fake_sftp.files[f"{ROOT}/bin/big.bin"]) == 600 * 1024

    def test_closed_session_raises(self, uploader: Uploader, session: Session, workspace: Path) -> None:
        session.close()
        with pytest.raises(ConnectionError, match="not established"):
            uploader.upload("builds", workspace / "README.txt")

    def test_traversal_in_folder_raises(self, uploader: Uploader, workspace: Path) -> None:
        with pytest.raises(PathError):
            uploader.upload("../outside", workspace / "README.txt")

    def test_write_failure_raises_transport_error(self, workspace: Path) -> None:
        sftp = FakeSFTP()
        sftp.open = MagicMock(side_effect=OSError("disk full"))  # type: ignore[method-assign]
        up = Uploader(Session(MagicMock(), sftp, "full"), ROOT)
        with pytest.raises(TransportError, match="disk full"):
            up.upload("builds", workspace / "README.txt")

    def test_callback_exceptions_do_not_break_upload(
        self, session: Session, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        up = Uploader(
            session,
            ROOT,
            on_progress=MagicMock(side_effect=RuntimeError("ui gone")),
            on_item_complete=MagicMock(side_effect=RuntimeError("ui gone")),
        )
        items = up.upload("builds", workspace / "README.txt")
        assert items[0].status == TransferStatus.COMPLETE
        up.on_item_complete.assert_called_once()  # type: ignore[union-attr]


class TestUploadDirectory:
    def test_directory_tree_is_mirrored(
        self, uploader: Uploader, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        items = uploader.upload("site", workspace / "build" / "reports")
        assert {i.dest_path for i in items} == {
            f"{ROOT}/site/reports/index.html",
            f"{ROOT}/site/reports/css/site.css",
        }
        assert fake_sftp.files[f"{ROOT}/site/reports/css/site.css"] == b"body{}"

    def test_nesting_mirrored_regardless_of_keep_hierarchy(
        self, session: Session, workspace: Path
    ) -> None:
        flat_sftp, kept_sftp = FakeSFTP(), FakeSFTP()
        Uploader(Session(MagicMock(), flat_sftp, "flat"), ROOT, workspace=workspace).upload(
            "site", workspace / "build" / "reports"
        )
        Uploader(Session(MagicMock(), kept_sftp, "kept"), ROOT, workspace=workspace).upload(
            "site", workspace / "build" / "reports", keep_hierarchy=True
        )
        assert f"{ROOT}/site/reports/css/site.css" in flat_sftp.files
        # the workspace-relative prefix is inserted once, at the top
        assert f"{ROOT}/site/build/reports/css/site.css" in kept_sftp.files
        assert f"{ROOT}/site/build/reports/css/build/reports" not in kept_sftp.dirs

    def test_empty_directory_uploads_nothing(self, uploader: Uploader, workspace: Path) -> None:
        (workspace / "empty").mkdir()
        assert uploader.upload("site", workspace / "empty") == []

    def test_conflict_fails_file_and_continues_siblings(
        self, uploader: Uploader, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        fake_sftp.add_file(f"{ROOT}/site/reports/css", b"i am a file")
        items = uploader.upload("site", workspace / "build" / "reports")
        by_name = {Path(i.source_path).name: i for i in items}
        assert by_name["site.css"].status == TransferStatus.FAILED
        assert "is not a directory" in (by_name["site.css"].error or "")
        assert by_name["index.html"].status == TransferStatus.COMPLETE
        assert fake_sftp.files[f"{ROOT}/site/reports/index.html"] == b"<html/>"

    def test_write_failure_keeps_earlier_items(
        self, uploader: Uploader, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        real_open = fake_sftp.open

        def _open(path: str, mode: str = "r", bufsize: int = -1) -> object:
            if path.endswith("index.html"):
                raise OSError("disk full")
            return real_open(path, mode, bufsize)

        fake_sftp.open = _open  # type: ignore[method-assign]
        results: list[TransferItem] = []
        with pytest.raises(TransportError, match="disk full"):
            uploader.upload("site", workspace / "build" / "reports", results=results)

        by_name = {Path(i.source_path).name: i for i in results}
        assert by_name["site.css"].status == TransferStatus.COMPLETE
        assert by_name["index.html"].status == TransferStatus.FAILED
        assert "disk full" in (by_name["index.html"].error or "")


class TestUploadErrors:
    def test_mkdir_failure_marks_item_failed(self, workspace: Path) -> None:
        sftp = FakeSFTP()
        sftp.mkdir = MagicMock(side_effect=PermissionError("denied"))  # type: ignore[method-assign]
        completed: list[TransferItem] = []
        up = Uploader(Session(MagicMock(), sftp, "ro"), ROOT, on_item_complete=completed.append)
        with pytest.raises(TransportError, match="Could not create remote directory"):
            up.upload("builds", workspace / "README.txt")

        assert [i.status for i in completed] == [TransferStatus.FAILED]
        assert "Could not create remote directory" in (completed[0].error or "")
        assert completed[0].end_time is not None

    def test_results_collects_items_on_success(self, uploader: Uploader, workspace: Path) -> None:
        results: list[TransferItem] = []
        items = uploader.upload("builds", workspace / "README.txt", results=results)
        assert results == items

    def test_root_with_parent_segment_is_accepted(
        self, session: Session, workspace: Path, fake_sftp: FakeSFTP
    ) -> None:
        up = Uploader(session, "/srv/other/../repo")
        items = up.upload("builds", workspace / "README.txt")
        assert items[0].status == TransferStatus.COMPLETE
        assert fake_sftp.files[f"{ROOT}/builds/README.txt"] == b"readme"

    def test_relative_workspace_keeps_hierarchy(
        self, session: Session, workspace: Path, fake_sftp: FakeSFTP, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(workspace)
        up = Uploader(session, ROOT, workspace=Path("."))
        up.upload("out", Path("build/libs/app.jar"), keep_hierarchy=True)
        assert fake_sftp.files[f"{ROOT}/out/build/libs/app.jar"] == b"jar-bytes"

    def test_absolute_file_under_relative_workspace(
        self, session: Session, workspace: Path, fake_sftp: FakeSFTP, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(workspace.parent)
        up = Uploader(session, ROOT, workspace=Path("workspace"))
        up.upload("out", workspace.resolve() / "build" / "libs" / "app.jar", keep_hierarchy=True)
        assert f"{ROOT}/out/build/libs/app.jar" in fake_sftp.files


class TestOpenStream:
    def test_creates_folder_and_truncates(self, uploader: Uploader, fake_sftp: FakeSFTP) -> None:
        fake_sftp.add_file(f"{ROOT}/logs/console.html", b"stale")
        with uploader.open_stream("logs", "console.html") as fh:
            fh.write(b"fresh")
        assert fake_sftp.files[f"{ROOT}/logs/console.html"] == b"fresh"

    def test_open_failure_raises_transport_error(self) -> None:
        sftp = FakeSFTP()
        sftp.open = MagicMock(side_effect=PermissionError("denied"))  # type: ignore[method-assign]
        up = Uploader(Session(MagicMock(), sftp, "ro"), ROOT)
        with pytest.raises(TransportError):
            up.open_stream("logs", "console.html")
