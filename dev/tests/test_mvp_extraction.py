import zipfile
from pathlib import Path

import pytest

from chdbatch.core.extraction import decompress, extract_archive, find_primary_target
from chdbatch.exceptions import (
    NoTargetFoundError,
    OutputMissingError,
    StagingFailedError,
    ToolExecutionFailedError,
    ToolUnavailableError,
    UnsupportedContainerError,
)


def _zip(path: Path, members: dict) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, payload in members.items():
            zf.writestr(name, payload)
    return path


def test_find_primary_target_uses_sorted_walk(tmp_path: Path) -> None:
    (tmp_path / "b").mkdir()
    (tmp_path / "a").mkdir()
    (tmp_path / "b" / "disc.iso").write_bytes(b"x")
    (tmp_path / "a" / "readme.txt").write_text("hi", encoding="utf-8")
    (tmp_path / "a" / "game.CUE").write_text("", encoding="utf-8")

    assert find_primary_target(tmp_path) == tmp_path / "a" / "game.CUE"


def test_find_primary_target_none(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
    assert find_primary_target(tmp_path) is None


def test_extract_zip_returns_first_supported_image(tmp_path: Path) -> None:
    archive = _zip(tmp_path / "game.zip", {"readme.txt": "x", "disc/game.iso": b"ISO"})

    found = extract_archive(archive, tmp_path / "extract")

    assert found == tmp_path / "extract" / "disc" / "game.iso"
    assert found.read_bytes() == b"ISO"


def test_extract_zip_without_image_raises_no_target(tmp_path: Path) -> None:
    archive = _zip(tmp_path / "docs.zip", {"manual.pdf": b"%PDF"})

    with pytest.raises(NoTargetFoundError) as info:
        extract_archive(archive, tmp_path / "extract")
    assert info.value.error_code == "NO_TARGET_FOUND"


def test_extract_zip_slip_becomes_staging_failure(tmp_path: Path) -> None:
    archive = _zip(tmp_path / "evil.zip", {"../escape.iso": b"x"})

    with pytest.raises(StagingFailedError):
        extract_archive(archive, tmp_path / "extract")
    assert not (tmp_path / "escape.iso").exists()


def test_corrupt_zip_becomes_staging_failure(tmp_path: Path) -> None:
    archive = tmp_path / "broken.zip"
    archive.write_bytes(b"this is not a zip")

    with pytest.raises(StagingFailedError):
        extract_archive(archive, tmp_path / "extract")


def test_unsupported_container(tmp_path: Path) -> None:
    archive = tmp_path / "game.tar"
    archive.write_bytes(b"x")

    with pytest.raises(UnsupportedContainerError):
        extract_archive(archive, tmp_path / "extract")


def test_extract_7z_removes_temporary_copy(tmp_path: Path) -> None:
    py7zr = pytest.importorskip("py7zr")
    payload = tmp_path / "payload"
    payload.mkdir()
    (payload / "game.cue").write_text('FILE "game.bin" BINARY\n', encoding="utf-8")
    (payload / "game.bin").write_bytes(b"BIN")
    archive = tmp_path / "game.7z"
    with py7zr.SevenZipFile(archive, "w") as zf:
        zf.write(payload / "game.cue", "game.cue")
        zf.write(payload / "game.bin", "game.bin")

    scratch = tmp_path / "scratch"
    scratch.mkdir()
    found = extract_archive(archive, scratch / "extract", scratch_dir=scratch)

    assert found.name == "game.cue"
    assert (found.parent / "game.bin").read_bytes() == b"BIN"
    assert [p.name for p in scratch.iterdir()] == ["extract"]
    assert archive.exists()


def test_decompress_requires_maxcso(tmp_path: Path) -> None:
    cso = tmp_path / "game.cso"
    cso.write_bytes(b"x")

    with pytest.raises(ToolUnavailableError):
        decompress(cso, tmp_path / "staging", maxcso=None)


@pytest.mark.integration
def test_decompress_writes_random_iso_name(tmp_path: Path, fake_maxcso) -> None:
    cso = tmp_path / "game.cso"
    cso.write_bytes(b"PAYLOAD")
    samples = []
    logs = []

    iso = decompress(cso, tmp_path / "staging", maxcso=fake_maxcso, on_sample=samples.append, log_cb=logs.append)

    assert iso.parent == tmp_path / "staging"
    assert iso.suffix == ".iso"
    assert iso.stem != "game"
    assert iso.read_bytes() == b"PAYLOAD"
    assert samples[-1] == 0.0
    assert any("Successfully decompressed game.cso" in line for line in logs)


@pytest.mark.integration
def test_decompress_failure_raises_tool_error(tmp_path: Path, fake_maxcso, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_MAXCSO_FAIL", "1")
    cso = tmp_path / "game.cso"
    cso.write_bytes(b"PAYLOAD")
    logs = []

    with pytest.raises(ToolExecutionFailedError) as info:
        decompress(cso, tmp_path / "staging", maxcso=fake_maxcso, log_cb=logs.append)
    assert info.value.exit_code == 1
    assert any("[MAXCSO STDERR] Error: not a CSO file" in line for line in logs)


@pytest.mark.integration
def test_decompress_success_without_iso_raises_output_missing(tmp_path: Path, fake_maxcso, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_MAXCSO_NO_OUTPUT", "1")
    cso = tmp_path / "game.cso"
    cso.write_bytes(b"PAYLOAD")

    with pytest.raises(OutputMissingError) as info:
        decompress(cso, tmp_path / "staging", maxcso=fake_maxcso)
    assert info.value.error_code == "OUTPUT_MISSING"
    assert list((tmp_path / "staging").iterdir()) == []
