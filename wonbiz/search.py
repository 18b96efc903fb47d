"""Hybrid search: remote vector results merged with a local substring filter."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Protocol

from .errors import WonbizError
from .models import Note

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.5


class RemoteSearch(Protocol):
    async def search_notes(self, query: str) -> List[Note]:
        ...


def local_filter(query: str, notes: Iterable[Note]) -> List[Note]:
    """Case-insensitive substring match against title, tags and summary."""
    needle = query.strip().lower()
    if not needle:
        return list(notes)
    return [
        note
        for note in notes
        if needle in note.title.lower()
        or any(needle in tag.lower() for tag in note.tags)
        or needle in note.summary.lower()
    ]


def merge_results(local: Iterable[Note], remote: Iterable[Note]) -> List[Note]:
    """Merge by note id: local matches first, then remote results.

    Last write wins for content, so a note found both ways carries the remote
    fields and score. Position is that of the first insertion, so local notes
    keep their place and remote-only notes follow in remote rank order.
    """
    merged: Dict[str, Note] = {}
    for note in local:
        merged[note.id] = note
    for note in remote:
        merged[note.id] = note
    return list(merged.values())


class HybridSearchEngine:
    """Holds the search box state: query, local notes, remote results and error.

    :meth:`set_query` debounces remote calls; only the newest query's results
    are ever applied. :meth:`search` is the one-shot form without debouncing.
    """

    def __init__(self, remote: RemoteSearch, debounce: float = DEBOUNCE_SECONDS) -> None:
        self._remote = remote
        self._debounce = debounce
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self.notes: List[Note] = []
        self.query = ""
        self.remote_results: List[Note] = []
        self.error: Optional[str] = None
        self.is_searching = False

    def set_notes(self, notes: Iterable[Note]) -> None:
        self.notes = list(notes)

    async def search(self, query: str, local_notes: Iterable[Note]) -> List[Note]:
        local_notes = list(local_notes)
        if not query.strip():
            return local_notes
        remote = await self._fetch_remote(query.strip())
        return merge_results(local_filter(query, local_notes), remote)

    async def _fetch_remote(self, query: str) -> List[Note]:
        try:
            results = await self._remote.search_notes(query)
        except WonbizError as exc:
            logger.warning("Vector search failed for %r: %s", query, exc)
            self.error = str(exc)
            return []
        self.error = None
        return results

    def set_query(self, query: str) -> None:
        """Record a new query; the remote search runs after a quiet period."""
        self.query = query
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

        if not query.strip():
            self.remote_results = []
            self.error = None
            self.is_searching = False
            return

        self.is_searching = True
        self._task = asyncio.get_running_loop().create_task(self._debounced(query.strip(), self._generation))

    async def _debounced(self, query: str, generation: int) -> None:
        await asyncio.sleep(self._debounce)
        if generation != self._generation:
            return
        try:
            results = await self._remote.search_notes(query)
        except WonbizError as exc:
            if generation == self._generation:
                logger.warning("Vector search failed for %r: %s", query, exc)
                self.error = str(exc)
                self.remote_results = []
                self.is_searching = False
            return
        if generation != self._generation:
            logger.debug("Discarding stale results for %r", query)
            return
        self.remote_results = results
        self.error = None
        self.is_searching = False

    async def wait(self) -> None:
        """Wait for the pending debounced search, if any."""
        if self._task is not None:
            await asyncio.wait({self._task})

    def displayed_notes(self) -> List[Note]:
        if not self.query.strip():
            return list(self.notes)
        return merge_results(local_filter(self.query, self.notes), self.remote_results)
