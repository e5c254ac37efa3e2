import json

import pytest

import make_audiobook
from audiobook_pipeline.snapshot import BatchSnapshot, JsonFileSnapshotStore, SnapshotChunk


def _args(tmp_path, *extra):
    return [
        "--engine",
        "mock",
        "--output",
        str(tmp_path / "out" / "book.wav"),
        "--metadata-output",
        str(tmp_path / "out" / "metadata.json"),
        "--chunk-dir",
        str(tmp_path / "chunks"),
        "--snapshot",
        str(tmp_path / "batch.json"),
        "--cache-dir",
        str(tmp_path / "cache"),
        "--no-cache",
        "--max-chunk-chars",
        "60",
        *extra,
    ]


def test_end_to_end_with_mock_engine(tmp_path):
    source = tmp_path / "book.txt"
    source.write_text(
        "# Chương 1\n\nNgày xửa ngày xưa có một cô bé.\n\nCô bé sống trong một ngôi làng nhỏ bên sông.",
        encoding="utf-8",
    )

    assert make_audiobook.main(_args(tmp_path, "--input", str(source), "--style", "literature")) == 0

    assert (tmp_path / "out" / "book.wav").read_bytes()[:4] == b"RIFF"
    metadata = json.loads((tmp_path / "out" / "metadata.json").read_text(encoding="utf-8"))
    assert metadata["style"] == "literature"
    assert metadata["batch"]["failed"] == []
    assert len(metadata["chunks"]) >= 2
    assert metadata["stats"]["chunk_count"] == len(metadata["chunks"])
    # Finished batches leave no snapshot and no chunk files behind.
    assert not (tmp_path / "batch.json").exists()
    assert list((tmp_path / "chunks").iterdir()) == []


def test_resume_from_snapshot(tmp_path):
    JsonFileSnapshotStore(tmp_path / "batch.json").save(
        BatchSnapshot(
            chunks=[SnapshotChunk(1, "Phần một."), SnapshotChunk(2, "Phần hai.")],
            voice="TIEU_LONG_NU",
            style="news",
            file_name="book.txt",
            completed_chunk_ids=[1],
        )
    )

    assert make_audiobook.main(_args(tmp_path, "--resume")) == 0

    metadata = json.loads((tmp_path / "out" / "metadata.json").read_text(encoding="utf-8"))
    assert metadata["voice"] == "vi-VN-Standard-A"
    assert metadata["batch"]["completed"] == [1, 2]


def test_resume_without_snapshot_fails(tmp_path):
    assert make_audiobook.main(_args(tmp_path, "--resume")) == 1


def test_input_is_required_without_resume(tmp_path):
    with pytest.raises(ValueError):
        make_audiobook.main(_args(tmp_path))
