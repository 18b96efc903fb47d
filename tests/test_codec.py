import pytest

from wonbiz.codec import decode_audio, guess_mime_type, note_from_payload, note_to_payload, session_from_payload
from wonbiz.errors import ValidationError
from wonbiz.models import AudioBlob, Note


def test_note_payload_uses_wire_names_and_base64_audio():
    note = Note(
        id="42",
        title="Standup",
        tags=["work"],
        created_at=1_700_000_000_000,
        duration=3.2,
        audio=AudioBlob(b"\x00\x01\x02", "audio/webm"),
    )

    payload = note_to_payload(note)
    assert payload["createdAt"] == 1_700_000_000_000
    assert payload["sourceType"] == "audio"
    assert payload["audioData"] == "AAEC"
    assert payload["audioMimeType"] == "audio/webm"
    assert "vectorScore" not in payload

    assert note_to_payload(note, include_audio=False)["audioData"] is None


def test_note_from_payload_decodes_audio_and_score():
    note = note_from_payload(
        {"id": 7, "title": "Idea", "audioData": "AAEC", "audioMimeType": "audio/wav", "vectorScore": 0.9}
    )
    assert note.id == "7"
    assert note.audio == AudioBlob(b"\x00\x01\x02", "audio/wav")
    assert note.vector_score == 0.9
    assert note.tags == []


def test_decode_audio_rejects_garbage():
    with pytest.raises(ValidationError):
        decode_audio("not base64!!")


def test_guess_mime_type(tmp_path):
    assert guess_mime_type(tmp_path / "memo.MP3") == "audio/mpeg"
    assert guess_mime_type(tmp_path / "memo.unknown") == "audio/webm"


def test_session_from_payload_keeps_message_order():
    session = session_from_payload(
        {
            "id": "s1",
            "title": "Chat",
            "messages": [
                {"id": "1", "role": "user", "text": "hi", "timestamp": 1},
                {"id": "2", "role": "model", "text": "hello", "timestamp": 2},
            ],
            "createdAt": 1,
            "updatedAt": 2,
        }
    )
    assert [m.role for m in session.messages] == ["user", "model"]
    assert session.updated_at == 2
