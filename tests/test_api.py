import asyncio

import pytest
from fastapi.testclient import TestClient

from wonbiz.api import Services, create_app
from wonbiz.auth import issue_token
from wonbiz.storage import Storage

from conftest import FakeAnalyzer, FakeEmbedder, FakeTranscriber


class EchoChat:
    async def chat(self, context, history, message, llm_config):
        return f"{llm_config.provider}: {message} ({len(history)} earlier)"


@pytest.fixture
def services(config):
    return Services(
        config=config,
        storage=Storage(config.db_path),
        transcriber=FakeTranscriber(transcript="buy milk", language="en"),
        analyzer=FakeAnalyzer(),
        embedder=FakeEmbedder(),
        chat_backend=EchoChat(),
    )


@pytest.fixture
def client(config, services):
    return TestClient(create_app(config, services))


def _auth(config, user_id="alice"):
    return {"Authorization": f"Bearer {issue_token(config, user_id)}"}


def _embedding(text):
    return asyncio.run(FakeEmbedder().embed(text))


def _note(note_id="n1", **extra):
    note = {
        "id": note_id,
        "title": "Groceries",
        "summary": "Shopping list",
        "transcript": "buy milk",
        "tags": ["shopping"],
        "createdAt": 1_700_000_000_000,
        "duration": 3.2,
        "sourceType": "audio",
        "llmProvider": "openai",
        "audioData": "AAEC",
        "audioMimeType": "audio/webm",
    }
    note.update(extra)
    return note


def test_health_reports_dependencies(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "mongodb": "connected",
        "voyage": "configured",
        "assemblyai": "configured",
        "llamaindex": "not configured",
    }


def test_notes_require_a_valid_token(client):
    assert client.get("/notes").status_code == 401
    response = client.get("/notes", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 403
    assert response.json()["detail"] == "Invalid or expired token"


def test_note_lifecycle(client, config):
    headers = _auth(config)
    saved = client.post("/notes", json={"note": _note(), "embedding": _embedding("buy milk")}, headers=headers)
    assert saved.json() == {"success": True}

    listed = client.get("/notes", headers=headers).json()["notes"]
    assert [n["id"] for n in listed] == ["n1"]
    assert listed[0]["audioData"] is None

    fetched = client.get("/notes/n1", headers=headers).json()["note"]
    assert fetched["audioData"] == "AAEC"
    assert fetched["tags"] == ["shopping"]

    assert client.get("/notes/n1", headers=_auth(config, "bob")).status_code == 404

    assert client.delete("/notes/n1", headers=headers).json() == {"success": True}
    assert client.get("/notes/n1", headers=headers).status_code == 404


def test_upsert_requires_an_embedding(client, config):
    response = client.post("/notes", json={"note": _note(), "embedding": []}, headers=_auth(config))
    assert response.status_code == 400


def test_vector_search_returns_scores(client, config):
    headers = _auth(config)
    client.post("/notes", json={"note": _note("n1"), "embedding": _embedding("buy milk")}, headers=headers)
    client.post(
        "/notes",
        json={"note": _note("n2", title="Gym"), "embedding": _embedding("leg day at the gym")},
        headers=headers,
    )

    notes = client.post("/notes/search", json={"query": "buy milk"}, headers=headers).json()["notes"]

    assert notes[0]["id"] == "n1"
    assert notes[0]["vectorScore"] == pytest.approx(1.0)
    assert client.post("/notes/search", json={"query": ""}, headers=headers).status_code == 400


def test_regenerate_updates_the_stored_note(client, config, services):
    headers = _auth(config)
    client.post("/notes", json={"note": _note(title="Old"), "embedding": [1.0, 1.0, 1.0]}, headers=headers)

    response = client.post("/notes/n1/regenerate", json={"llmConfig": {"provider": "grok"}}, headers=headers)

    assert response.status_code == 200
    assert response.json()["title"] == "Greeting"
    assert response.json()["llmProvider"] == "grok"
    assert services.storage.get_embedding("alice", "n1") == _embedding("buy milk")
    assert services.analyzer.calls[0][1].model == "grok-4.1-fast"


def test_busy_note_cannot_be_deleted(client, config, services):
    headers = _auth(config)
    client.post("/notes", json={"note": _note(), "embedding": [1.0]}, headers=headers)
    services.busy_notes.add("n1")

    assert client.delete("/notes/n1", headers=headers).status_code == 409


def test_transcribe_and_orchestrate(client):
    transcribed = client.post("/transcribe", json={"audioBlob": "AAEC", "language": "en"})
    assert transcribed.json() == {"transcript": "buy milk", "detectedLanguage": "en"}
    assert client.post("/transcribe", json={"audioBlob": "%%%"}).status_code == 400

    analysed = client.post(
        "/orchestrate",
        json={"transcript": "buy milk", "llmConfig": {"provider": "openai", "model": "gpt-4o"}},
    )
    assert analysed.json()["title"] == "Greeting"
    assert analysed.json()["degraded"] is False

    rejected = client.post(
        "/orchestrate",
        json={"transcript": "buy milk", "llmConfig": {"provider": "openai", "model": "gpt-2"}},
    )
    assert rejected.status_code == 400


def test_embed_and_chat(client):
    assert client.post("/embed", json={"text": "buy milk"}).json() == {"embedding": _embedding("buy milk")}

    response = client.post(
        "/chat",
        json={
            "context": "Title: Groceries",
            "history": [{"role": "user", "content": "hi"}],
            "message": "what should I buy?",
            "llmConfig": {"provider": "gemini"},
        },
    )
    assert response.json() == {"response": "gemini: what should I buy? (1 earlier)"}


def test_chat_sessions(client, config):
    headers = _auth(config)
    assert client.get("/chat-sessions/latest", headers=headers).json() == {"session": None}

    session = {
        "id": "s1",
        "title": "Groceries",
        "messages": [{"id": "m1", "role": "user", "text": "what to buy?", "timestamp": 1}],
        "createdAt": 1,
    }
    assert client.post("/chat-sessions", json={"session": session}, headers=headers).json() == {"success": True}

    latest = client.get("/chat-sessions/latest", headers=headers).json()["session"]
    assert latest["id"] == "s1"
    assert latest["messages"][0]["text"] == "what to buy?"
    assert [s["id"] for s in client.get("/chat-sessions", headers=headers).json()["sessions"]] == ["s1"]

    assert client.delete("/chat-sessions/s1", headers=headers).json() == {"success": True}
    assert client.get("/chat-sessions/s1", headers=headers).status_code == 404
    assert client.get("/chat-sessions", headers=_auth(config, "bob")).json() == {"sessions": []}
