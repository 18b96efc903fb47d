import pytest

from wonbiz.storage import Storage, StorageError


def _note(note_id, title="Meeting", created_at=1_000, **extra):
    payload = {
        "id": note_id,
        "title": title,
        "summary": f"{title} summary",
        "transcript": f"{title} transcript",
        "tags": ["work"],
        "createdAt": created_at,
        "duration": 3.2,
        "sourceType": "audio",
        "llmProvider": "openai",
        "audioData": "AAEC",
        "audioMimeType": "audio/webm",
    }
    payload.update(extra)
    return payload


def test_upsert_and_retrieve_note(tmp_path):
    storage = Storage(tmp_path / "store.db")

    storage.upsert_note("alice", _note("1"), [1.0, 0.0])

    fetched = storage.get_note("alice", "1")
    assert fetched["title"] == "Meeting"
    assert fetched["tags"] == ["work"]
    assert fetched["audioData"] == "AAEC"
    assert storage.get_embedding("alice", "1") == [1.0, 0.0]


def test_upsert_replaces_existing_note(tmp_path):
    storage = Storage(tmp_path / "store.db")
    storage.upsert_note("alice", _note("1"), [1.0, 0.0])
    storage.upsert_note("alice", _note("1", title="Renamed"), [0.0, 1.0])

    rows = list(storage.list_notes("alice"))
    assert [row["title"] for row in rows] == ["Renamed"]


def test_notes_are_scoped_by_user(tmp_path):
    storage = Storage(tmp_path / "store.db")
    storage.upsert_note("alice", _note("1"), [1.0])

    assert list(storage.list_notes("bob")) == []
    with pytest.raises(StorageError):
        storage.get_note("bob", "1")
    with pytest.raises(StorageError):
        storage.delete_note("bob", "1")


def test_list_notes_newest_first_without_audio(tmp_path):
    storage = Storage(tmp_path / "store.db")
    storage.upsert_note("alice", _note("old", created_at=1_000), [1.0])
    storage.upsert_note("alice", _note("new", created_at=2_000), [1.0])

    rows = list(storage.list_notes("alice"))
    assert [row["id"] for row in rows] == ["new", "old"]
    assert all(row["audioData"] is None for row in rows)


def test_update_analysis_replaces_fields_and_embedding(tmp_path):
    storage = Storage(tmp_path / "store.db")
    storage.upsert_note("alice", _note("1"), [1.0, 0.0])

    updated = storage.update_analysis(
        "alice",
        "1",
        transcript="new text",
        summary="new summary",
        title="New title",
        tags=["fresh"],
        llm_provider="gemini",
        embedding=[0.0, 1.0],
    )
    assert updated["title"] == "New title"
    assert updated["llmProvider"] == "gemini"
    assert updated["createdAt"] == 1_000
    assert storage.get_embedding("alice", "1") == [0.0, 1.0]


def test_search_ranks_by_cosine_similarity(tmp_path):
    storage = Storage(tmp_path / "store.db")
    storage.upsert_note("alice", _note("a", title="Alpha"), [1.0, 0.0])
    storage.upsert_note("alice", _note("b", title="Beta"), [0.6, 0.8])
    storage.upsert_note("alice", _note("c", title="Mismatch"), [1.0, 0.0, 0.0])
    storage.upsert_note("bob", _note("d", title="Other user"), [1.0, 0.0])

    results = storage.search_notes("alice", [1.0, 0.0])
    assert [note["id"] for note, _ in results] == ["a", "b"]
    assert results[0][1] == pytest.approx(1.0)
    assert results[1][1] == pytest.approx(0.6)


def test_search_respects_limit(tmp_path):
    storage = Storage(tmp_path / "store.db")
    for index in range(5):
        storage.upsert_note("alice", _note(str(index), created_at=index), [1.0, float(index)])

    assert len(storage.search_notes("alice", [1.0, 0.0], limit=2)) == 2
    assert storage.search_notes("alice", [0.0, 0.0]) == []


def test_sessions_ordered_by_last_activity(tmp_path, monkeypatch):
    ticks = iter(range(1_000, 2_000, 100))
    monkeypatch.setattr("wonbiz.storage.now_ms", lambda: next(ticks))
    storage = Storage(tmp_path / "store.db")
    storage.upsert_session("alice", {"id": "A", "title": "First", "messages": [], "createdAt": 10})
    storage.upsert_session("alice", {"id": "B", "title": "Second", "messages": []})
    storage.upsert_session("alice", {"id": "A", "title": "First", "messages": [{"id": "m", "role": "user"}]})

    sessions = list(storage.list_sessions("alice"))
    assert sessions[0]["id"] == "A"
    assert sessions[0]["createdAt"] == 10
    assert storage.latest_session("alice")["id"] == "A"
    assert storage.latest_session("bob") is None


def test_delete_session(tmp_path):
    storage = Storage(tmp_path / "store.db")
    storage.upsert_session("alice", {"id": "A", "messages": []})
    assert storage.get_session("alice", "A")["title"] == "New Chat"

    storage.delete_session("alice", "A")

    with pytest.raises(StorageError):
        storage.get_session("alice", "A")
