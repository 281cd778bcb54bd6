import threading
import zipfile
from pathlib import Path

import pytest

from chdbatch.app.conversion_pipeline import (
    ConversionOptions,
    ConversionPipeline,
    StagingContext,
    StagingRegistry,
)
from chdbatch.app.models import CancelToken, ItemKind, WorkItem
from chdbatch.exceptions import OperationCancelledError

pytestmark = pytest.mark.integration


def _pipeline(tmp_path, chdman_tool, recorder, *, maxcso=None, token=None, delete_originals=False,
              archive_support=None):
    registry = StagingRegistry()
    kwargs = {}
    if archive_support is not None:
        kwargs["archive_support"] = archive_support
    pipeline = ConversionPipeline(
        chdman_tool,
        recorder.sinks,
        ConversionOptions(
            delete_originals=delete_originals,
            cores=2,
            temp_root=tmp_path / "staging",
            cleanup_timeout_sec=2.0,
            poll_interval_sec=0.1,
        ),
        maxcso_tool=maxcso,
        cancel_token=token or CancelToken(),
        registry=registry,
        **kwargs,
    )
    return pipeline, registry


def _item(src: Path, out_dir: Path, kind=ItemKind.PLAIN_IMAGE) -> WorkItem:
    return WorkItem(src, kind, out_dir / f"{src.stem}.chd")


def _assert_no_staging(tmp_path: Path, registry: StagingRegistry) -> None:
    assert registry.pending() == []
    staging = tmp_path / "staging"
    assert not staging.exists() or list(staging.iterdir()) == []


def test_staging_context_removes_directory(tmp_path):
    registry = StagingRegistry()
    with StagingContext(tmp_path / "staging", 1.0, registry) as staging:
        assert staging.directory.name.startswith("chdbatch_")
        (staging.directory / "file.bin").write_bytes(b"x")
        assert registry.pending() == [staging.directory]
    assert not staging.directory.exists()
    assert registry.pending() == []


def test_iso_converts_with_createcd(tmp_path, fake_chdman, recorder, monkeypatch):
    log = tmp_path / "chdman.log"
    monkeypatch.setenv("FAKE_CHDMAN_LOG", str(log))
    src = tmp_path / "in" / "My Game….iso"
    src.parent.mkdir()
    src.write_bytes(b"ISO")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder)

    result = pipeline.process(_item(src, tmp_path / "out"))

    assert result.ok, result.message
    out = tmp_path / "out" / "My Game….chd"
    assert out.read_bytes() == b"MComprHDISO"
    assert src.exists()
    call = log.read_text(encoding="utf-8").split()
    assert call[0] == "createcd"
    assert call[-3:] == ["-f", "-np", "2"]
    # the staged copy has a random name, never the original one
    assert "…" not in call[2]
    assert ("My Game….iso", 50.0) in recorder.tool_progress
    assert "Compression ratio for My Game….iso: 40.5%" in recorder.text()
    _assert_no_staging(tmp_path, registry)


def test_img_converts_with_createhd(tmp_path, fake_chdman, recorder, monkeypatch):
    log = tmp_path / "chdman.log"
    monkeypatch.setenv("FAKE_CHDMAN_LOG", str(log))
    src = tmp_path / "disk.img"
    src.write_bytes(b"IMG")
    pipeline, _registry = _pipeline(tmp_path, fake_chdman, recorder)

    assert pipeline.process(_item(src, tmp_path / "out")).ok
    assert log.read_text(encoding="utf-8").startswith("createhd ")


def test_cue_tracks_are_staged_and_deleted_with_originals(tmp_path, fake_chdman, recorder):
    src_dir = tmp_path / "in"
    src_dir.mkdir()
    cue = src_dir / "game.cue"
    cue.write_text('FILE "Track 01.bin" BINARY\n  TRACK 01 MODE1/2352\n', encoding="utf-8")
    track = src_dir / "Track 01.bin"
    track.write_bytes(b"TRACK")
    other = src_dir / "other.bin"
    other.write_bytes(b"keep")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder, delete_originals=True)

    result = pipeline.process(_item(cue, tmp_path / "out"))

    assert result.ok, result.message
    assert (tmp_path / "out" / "game.chd").exists()
    assert not cue.exists()
    assert not track.exists()
    assert other.exists()
    assert "Deleted original file: Track 01.bin" in recorder.text()
    _assert_no_staging(tmp_path, registry)


def test_tool_failure_deletes_partial_output(tmp_path, fake_chdman, recorder, monkeypatch):
    monkeypatch.setenv("FAKE_CHDMAN_EXIT", "1")
    src = tmp_path / "game.iso"
    src.write_bytes(b"ISO")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder, delete_originals=True)

    result = pipeline.process(_item(src, tmp_path / "out"))

    assert not result.ok
    assert result.error_code == "TOOL_FAILED"
    assert not (tmp_path / "out" / "game.chd").exists()
    assert src.exists()
    assert "Failed to convert game.iso" in recorder.text()
    _assert_no_staging(tmp_path, registry)


def test_staging_failure_keeps_existing_output(tmp_path, fake_chdman, recorder):
    archive = tmp_path / "docs.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("manual.txt", "nothing to convert")
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    existing = out_dir / "docs.chd"
    existing.write_bytes(b"older conversion")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder)

    result = pipeline.process(_item(archive, out_dir, ItemKind.ARCHIVE))

    assert result.error_code == "NO_TARGET_FOUND"
    assert existing.read_bytes() == b"older conversion"
    _assert_no_staging(tmp_path, registry)


def test_zip_archive_converts_first_image(tmp_path, fake_chdman, recorder, monkeypatch):
    log = tmp_path / "chdman.log"
    monkeypatch.setenv("FAKE_CHDMAN_LOG", str(log))
    archive = tmp_path / "bundle.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("disc/hd.img", b"HD")
        zf.writestr("readme.txt", "x")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder)

    result = pipeline.process(_item(archive, tmp_path / "out", ItemKind.ARCHIVE))

    assert result.ok, result.message
    assert (tmp_path / "out" / "bundle.chd").read_bytes() == b"MComprHDHD"
    assert log.read_text(encoding="utf-8").startswith("createhd ")
    _assert_no_staging(tmp_path, registry)


def test_archive_without_backend_is_dependency_failure(tmp_path, fake_chdman, recorder):
    archive = tmp_path / "game.rar"
    archive.write_bytes(b"Rar!")
    pipeline, _registry = _pipeline(tmp_path, fake_chdman, recorder, archive_support=lambda ext: False)

    result = pipeline.process(_item(archive, tmp_path / "out", ItemKind.ARCHIVE))

    assert result.error_code == "DEPENDENCY_MISSING"


def test_cso_is_decompressed_before_conversion(tmp_path, fake_chdman, fake_maxcso, recorder, monkeypatch):
    log = tmp_path / "chdman.log"
    monkeypatch.setenv("FAKE_CHDMAN_LOG", str(log))
    cso = tmp_path / "game.cso"
    cso.write_bytes(b"CSO")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder, maxcso=fake_maxcso)

    result = pipeline.process(_item(cso, tmp_path / "out", ItemKind.COMPRESSED_IMAGE))

    assert result.ok, result.message
    assert (tmp_path / "out" / "game.chd").read_bytes() == b"MComprHDCSO"
    assert log.read_text(encoding="utf-8").startswith("createcd ")
    _assert_no_staging(tmp_path, registry)


def test_cso_without_maxcso_fails(tmp_path, fake_chdman, recorder):
    cso = tmp_path / "game.cso"
    cso.write_bytes(b"CSO")
    pipeline, _registry = _pipeline(tmp_path, fake_chdman, recorder, maxcso=None)

    result = pipeline.process(_item(cso, tmp_path / "out", ItemKind.COMPRESSED_IMAGE))

    assert result.error_code == "DEPENDENCY_MISSING"
    assert "maxcso" in (result.message or "")


def test_cancel_kills_tool_and_discards_partial_output(tmp_path, fake_chdman, recorder, monkeypatch):
    monkeypatch.setenv("FAKE_CHDMAN_SLEEP", "30")
    src = tmp_path / "game.iso"
    src.write_bytes(b"ISO")
    token = CancelToken()
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder, token=token, delete_originals=True)
    timer = threading.Timer(1.0, token.cancel)
    timer.start()
    try:
        with pytest.raises(OperationCancelledError):
            pipeline.process(_item(src, tmp_path / "out"))
    finally:
        timer.cancel()

    assert not (tmp_path / "out" / "game.chd").exists()
    assert src.exists()
    assert "Conversion processing cancelled for game.iso." in recorder.text()
    _assert_no_staging(tmp_path, registry)


def test_missing_track_is_reported_before_conversion(tmp_path, fake_chdman, recorder):
    cue = tmp_path / "game.cue"
    cue.write_text('FILE "gone.bin" BINARY\n', encoding="utf-8")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder)

    result = pipeline.process(_item(cue, tmp_path / "out"))

    assert "WARNING: game.cue references missing file gone.bin" in recorder.text()
    assert result.error_code == "TOOL_FAILED"
    _assert_no_staging(tmp_path, registry)


def test_success_without_output_is_output_missing(tmp_path, fake_chdman, recorder, monkeypatch):
    monkeypatch.setenv("FAKE_CHDMAN_NO_OUTPUT", "1")
    src = tmp_path / "game.iso"
    src.write_bytes(b"ISO")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder, delete_originals=True)

    result = pipeline.process(_item(src, tmp_path / "out"))

    assert result.error_code == "OUTPUT_MISSING"
    assert src.exists()
    assert "game.chd is missing" in recorder.text()
    _assert_no_staging(tmp_path, registry)


def test_cso_success_without_iso_is_output_missing(tmp_path, fake_chdman, fake_maxcso, recorder, monkeypatch):
    monkeypatch.setenv("FAKE_MAXCSO_NO_OUTPUT", "1")
    cso = tmp_path / "game.cso"
    cso.write_bytes(b"CSO")
    pipeline, registry = _pipeline(tmp_path, fake_chdman, recorder, maxcso=fake_maxcso)

    result = pipeline.process(_item(cso, tmp_path / "out", ItemKind.COMPRESSED_IMAGE))

    assert result.error_code == "OUTPUT_MISSING"
    assert not (tmp_path / "out" / "game.chd").exists()
    _assert_no_staging(tmp_path, registry)
