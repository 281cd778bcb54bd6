from pathlib import Path

import pytest

from chdbatch.app.models import CancelToken, ItemKind, WorkItem
from chdbatch.app.verification_pipeline import VerificationOptions, VerificationPipeline, mirrored_destination
from chdbatch.exceptions import OperationCancelledError


def _chd(path: Path, payload: bytes = b"MComprHD") -> WorkItem:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return WorkItem(path, ItemKind.CHD, path)


def test_mirrored_destination_keeps_relative_folder(tmp_path):
    scan_root = tmp_path / "in"
    source = scan_root / "psx" / "disc" / "game.chd"

    assert mirrored_destination(source, scan_root, tmp_path / "ok", True) == tmp_path / "ok" / "psx" / "disc" / "game.chd"
    assert mirrored_destination(source, scan_root, tmp_path / "ok", False) == tmp_path / "ok" / "game.chd"


@pytest.mark.integration
def test_valid_file_is_moved_to_success_folder(tmp_path, fake_chdman, recorder):
    scan_root = tmp_path / "in"
    item = _chd(scan_root / "psx" / "good.chd")
    options = VerificationOptions(scan_root, recursive=True, move_success_to=tmp_path / "ok",
                                  move_failed_to=tmp_path / "bad")
    pipeline = VerificationPipeline(fake_chdman, recorder.sinks, options)

    result = pipeline.process(item)

    assert result.ok
    moved = tmp_path / "ok" / "psx" / "good.chd"
    assert moved.exists()
    assert result.output_path == str(moved)
    assert not item.source_path.exists()
    assert "✓ Verification successful: good.chd" in recorder.text()
    assert ("good.chd", 50.0) in recorder.tool_progress


@pytest.mark.integration
def test_invalid_file_is_moved_to_failed_folder(tmp_path, fake_chdman, recorder):
    scan_root = tmp_path / "in"
    item = _chd(scan_root / "broken.chd", b"BAD")
    options = VerificationOptions(scan_root, move_success_to=tmp_path / "ok", move_failed_to=tmp_path / "bad")
    pipeline = VerificationPipeline(fake_chdman, recorder.sinks, options)

    result = pipeline.process(item)

    assert not result.ok
    assert result.error_code == "VERIFY_FAILED"
    assert (tmp_path / "bad" / "broken.chd").exists()
    assert "✗ Verification failed: broken.chd" in recorder.text()
    assert "[CHDMAN VERIFY STDERR] Error: CHD is corrupt" in recorder.text()


@pytest.mark.integration
def test_existing_destination_skips_move(tmp_path, fake_chdman, recorder):
    scan_root = tmp_path / "in"
    item = _chd(scan_root / "good.chd", b"MComprHD new")
    taken = tmp_path / "ok" / "good.chd"
    taken.parent.mkdir()
    taken.write_bytes(b"MComprHD old")
    options = VerificationOptions(scan_root, move_success_to=tmp_path / "ok")
    pipeline = VerificationPipeline(fake_chdman, recorder.sinks, options)

    result = pipeline.process(item)

    assert result.ok
    assert item.source_path.exists()
    assert taken.read_bytes() == b"MComprHD old"
    assert "Destination file already exists" in recorder.text()


@pytest.mark.integration
def test_without_move_targets_files_stay(tmp_path, fake_chdman, recorder):
    item = _chd(tmp_path / "in" / "good.chd")
    pipeline = VerificationPipeline(fake_chdman, recorder.sinks, VerificationOptions(tmp_path / "in"))

    result = pipeline.process(item)

    assert result.ok
    assert result.output_path == str(item.source_path)


def test_cancelled_before_start_raises(tmp_path, fake_chdman, recorder):
    item = _chd(tmp_path / "in" / "good.chd")
    token = CancelToken()
    token.cancel()
    pipeline = VerificationPipeline(fake_chdman, recorder.sinks, VerificationOptions(tmp_path / "in"),
                                    cancel_token=token)

    with pytest.raises(OperationCancelledError):
        pipeline.process(item)
