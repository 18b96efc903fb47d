import asyncio

import pytest

from wonbiz.errors import SearchFailure
from wonbiz.models import Note
from wonbiz.search import HybridSearchEngine, local_filter, merge_results

from conftest import InMemoryNotes


def _notes():
    return [
        Note(id="1", title="Project kickoff", summary="Roadmap", tags=["work"]),
        Note(id="2", title="Groceries", summary="Milk and eggs", tags=["shopping"]),
        Note(id="3", title="Gym", summary="Leg day", tags=["Health"]),
    ]


def test_local_filter_matches_title_tags_and_summary():
    notes = _notes()
    assert [n.id for n in local_filter("KICKOFF", notes)] == ["1"]
    assert [n.id for n in local_filter("eggs", notes)] == ["2"]
    assert [n.id for n in local_filter("health", notes)] == ["3"]
    assert local_filter("  ", notes) == notes


def test_merge_prefers_remote_content_and_keeps_local_position():
    local = [Note(id="1", title="Local one"), Note(id="4", title="Local four")]
    remote = [Note(id="9", title="Remote nine", vector_score=0.95), Note(id="1", title="Remote one", vector_score=0.9)]

    merged = merge_results(local, remote)

    assert [n.id for n in merged] == ["1", "4", "9"]
    assert merged[0].vector_score == 0.9
    assert merged[0].title == "Remote one"


@pytest.mark.asyncio
async def test_one_shot_search_merges_remote_results():
    remote = InMemoryNotes()
    remote.search_results = [Note(id="1", title="Project kickoff", vector_score=0.9)]
    engine = HybridSearchEngine(remote)

    results = await engine.search("kickoff", _notes())

    assert [n.id for n in results] == ["1"]
    assert results[0].vector_score == 0.9
    assert remote.queries == ["kickoff"]


@pytest.mark.asyncio
async def test_failed_remote_search_keeps_local_matches():
    remote = InMemoryNotes()
    remote.search_error = SearchFailure("Vector search failed: 503")
    engine = HybridSearchEngine(remote)

    results = await engine.search("groceries", _notes())

    assert [n.id for n in results] == ["2"]
    assert "503" in engine.error


@pytest.mark.asyncio
async def test_typing_quickly_issues_one_remote_search():
    remote = InMemoryNotes()
    remote.search_results = [Note(id="7", title="Semantic hit", vector_score=0.8)]
    engine = HybridSearchEngine(remote, debounce=0.05)
    engine.set_notes(_notes())

    for query in ("a", "ab", "abc"):
        engine.set_query(query)
        await asyncio.sleep(0.01)
    assert engine.is_searching
    await engine.wait()

    assert remote.queries == ["abc"]
    assert not engine.is_searching
    assert [n.id for n in engine.displayed_notes()] == ["7"]


@pytest.mark.asyncio
async def test_clearing_the_query_skips_the_remote_call():
    remote = InMemoryNotes()
    engine = HybridSearchEngine(remote, debounce=0.05)
    engine.set_notes(_notes())

    engine.set_query("gym")
    engine.set_query("")
    await engine.wait()
    await asyncio.sleep(0.1)

    assert remote.queries == []
    assert engine.remote_results == []
    assert [n.id for n in engine.displayed_notes()] == ["1", "2", "3"]


@pytest.mark.asyncio
async def test_debounced_failure_sets_error_and_clears_remote_results():
    remote = InMemoryNotes()
    remote.search_error = SearchFailure("Vector search failed: timeout")
    engine = HybridSearchEngine(remote, debounce=0.01)
    engine.set_notes(_notes())
    engine.remote_results = [Note(id="old")]

    engine.set_query("leg")
    await engine.wait()

    assert engine.error == "Vector search failed: timeout"
    assert engine.remote_results == []
    assert [n.id for n in engine.displayed_notes()] == ["3"]


@pytest.mark.asyncio
async def test_superseded_in_flight_search_never_applies_its_results():
    gate = asyncio.Event()
    started = asyncio.Event()

    class SlowRemote(InMemoryNotes):
        async def search_notes(self, query):
            self.queries.append(query)
            if query == "older":
                started.set()
                await gate.wait()
                return [Note(id="stale", title="older")]
            return [Note(id="fresh", title="newer")]

    remote = SlowRemote()
    engine = HybridSearchEngine(remote, debounce=0.01)
    engine.set_notes([])

    engine.set_query("older")
    await started.wait()
    engine.set_query("newer")
    gate.set()
    await engine.wait()
    await asyncio.sleep(0.02)

    assert remote.queries == ["older", "newer"]
    assert [n.id for n in engine.remote_results] == ["fresh"]
    assert not engine.is_searching
    assert engine.error is None
