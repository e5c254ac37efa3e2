import pytest

from audiobook_pipeline.chunks import AudioHandle, ChunkStore, FileAudioHandle, Fingerprint
from audiobook_pipeline.errors import AudioHandleReleased

FP = Fingerprint.of("vi-VN-Standard-B", "general")


def _store(texts):
    store = ChunkStore()
    store.initialize(texts)
    return store


def _attach(store, chunk_id, fingerprint=FP):
    chunk = store.get(chunk_id)
    handle = AudioHandle(b"audio-%d" % chunk_id, "audio/wav")
    assert store.attach_audio(chunk, handle, fingerprint, source_text=chunk.text)
    return handle


def test_initialize_assigns_dense_ids():
    store = _store(["one", "two", "three"])

    assert [c.id for c in store] == [1, 2, 3]
    assert store.texts() == ["one", "two", "three"]
    assert store.full_text() == "one\n\ntwo\n\nthree"


def test_split_inserts_tail_and_redenses():
    store = _store(["Hello world. Second part.", "last"])

    assert store.split(1, 12)
    assert store.texts() == ["Hello world.", "Second part.", "last"]
    assert [c.id for c in store] == [1, 2, 3]


def test_split_with_empty_side_is_noop():
    store = _store(["Hello world."])

    assert not store.split(1, 0)
    assert not store.split(1, 100)
    assert store.texts() == ["Hello world."]


def test_merge_with_next_joins_and_releases_following_audio():
    store = _store(["a1", "b2", "c3"])
    second = _attach(store, 2)

    assert store.merge_with_next(1)
    assert store.texts() == ["a1\n\nb2", "c3"]
    assert [c.id for c in store] == [1, 2]
    assert second.released
    # The last chunk has nothing to merge with.
    assert not store.merge_with_next(2)


def test_delete_releases_and_redenses():
    store = _store(["a", "b", "c"])
    handle = _attach(store, 2)

    assert store.delete(2)
    assert handle.released
    assert [c.id for c in store] == [1, 2]
    assert store.texts() == ["a", "c"]
    assert not store.delete(9)


def test_ids_stay_dense_across_edits():
    store = _store(["First. Tail.", "b", "c", "d"])

    store.split(1, 6)
    store.delete(3)
    store.merge_with_next(2)
    store.split(1, 3)

    assert [c.id for c in store] == list(range(1, len(store) + 1))


def test_update_text_invalidates_audio():
    store = _store(["old text"])
    chunk = store.get(1)
    chunk.dialect_converted = True
    handle = _attach(store, 1)
    preview = AudioHandle(b"preview", "audio/wav")
    assert store.attach_preview(chunk, preview, FP, source_text=chunk.text)
    assert chunk.has_audio

    assert store.update_text(1, "new text")
    assert handle.released
    assert chunk.audio_handle is None
    assert not chunk.audio_generated
    assert chunk.fingerprint is None
    assert preview.released
    assert chunk.preview_handle is None
    assert chunk.preview_fingerprint is None
    assert not chunk.dialect_converted


def test_update_text_with_same_text_keeps_audio():
    store = _store(["same"])
    handle = _attach(store, 1)

    assert not store.update_text(1, "same")
    assert not handle.released
    assert store.get(1).has_audio


def test_all_generated():
    store = ChunkStore()
    assert not store.all_generated()

    store.initialize(["a", "b"])
    _attach(store, 1)
    assert not store.all_generated()

    _attach(store, 2)
    assert store.all_generated()
    assert [h.read() for h in store.ordered_handles()] == [b"audio-1", b"audio-2"]


def test_initialize_reuses_matching_audio():
    store = _store(["A", "B"])
    handle_a = _attach(store, 1)
    handle_b = _attach(store, 2)
    old_b = store.get(2)

    store.initialize(["B", "C"], fingerprint=FP)

    assert store.get(1) is old_b
    assert store.get(1).has_audio
    assert not handle_b.released
    assert handle_a.released
    assert not store.get(2).has_audio


def test_initialize_with_other_fingerprint_discards_audio():
    store = _store(["A"])
    handle = _attach(store, 1)

    store.initialize(["A"], fingerprint=Fingerprint.of("vi-VN-Standard-A", "news"))

    assert handle.released
    assert not store.get(1).has_audio


def test_initialize_reuses_each_chunk_once():
    store = _store(["A"])
    _attach(store, 1)

    store.initialize(["A", "A"], fingerprint=FP)

    assert len(store) == 2
    assert [c.has_audio for c in store] == [True, False]


def test_attach_audio_to_changed_chunk_releases_handle():
    store = _store(["before"])
    chunk = store.get(1)
    source_text = chunk.text
    store.update_text(1, "after")

    handle = AudioHandle(b"x", "audio/wav")
    assert not store.attach_audio(chunk, handle, FP, source_text=source_text)
    assert handle.released
    assert not chunk.has_audio


def test_attach_audio_to_removed_chunk_releases_handle():
    store = _store(["a", "b"])
    chunk = store.get(2)
    store.delete(2)

    handle = AudioHandle(b"x", "audio/wav")
    assert not store.attach_audio(chunk, handle, FP, source_text="b")
    assert handle.released


def test_clear_releases_everything():
    store = _store(["a", "b"])
    handles = [_attach(store, 1), _attach(store, 2)]

    store.clear()

    assert len(store) == 0
    assert all(h.released for h in handles)


def test_audio_handle_release():
    handle = AudioHandle(b"data", "audio/wav")
    assert handle.read() == b"data"

    handle.release()
    handle.release()

    with pytest.raises(AudioHandleReleased):
        handle.read()


def test_file_audio_handle_deletes_file(tmp_path):
    handle = FileAudioHandle.write(tmp_path / "chunks", b"RIFF", "audio/wav")

    assert handle.path.exists()
    assert handle.path.suffix == ".wav"
    assert handle.read() == b"RIFF"

    handle.release()
    assert not handle.path.exists()
    with pytest.raises(AudioHandleReleased):
        handle.read()
