# Overview: Per-book cache of computed ledger summaries, invalidated by the change feed.

from __future__ import annotations

import logging
import threading
from typing import Callable

from flask import current_app

from .change_feed import ChangeEvent, ChangeFeed

logger = logging.getLogger(__name__)

WATCHED_TABLES = ("transactions", "pepi_books")


class BookViewCache:
    """
    Computed summaries keyed by book id.

    Entries are only ever dropped, never patched: the next read recomputes
    from the full transaction history. A per-book generation counter keeps a
    computation that raced with an invalidation from being stored.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._summaries: dict[int, dict] = {}
        self._generations: dict[int, int] = {}
        self.hits = 0
        self.misses = 0

    def get_summary(self, book_id: int, compute: Callable[[], dict]) -> dict:
        with self._lock:
            cached = self._summaries.get(book_id)
            if cached is not None:
                self.hits += 1
                return dict(cached)
            generation = self._generations.get(book_id, 0)
            self.misses += 1

        value = compute()

        with self._lock:
            if self._generations.get(book_id, 0) == generation:
                self._summaries[book_id] = dict(value)
        return value

    def invalidate_book(self, book_id: int) -> None:
        with self._lock:
            self._summaries.pop(book_id, None)
            self._generations[book_id] = self._generations.get(book_id, 0) + 1

    def clear(self) -> None:
        with self._lock:
            for book_id in list(self._summaries):
                self._generations[book_id] = self._generations.get(book_id, 0) + 1
            self._summaries.clear()

    def is_cached(self, book_id: int) -> bool:
        with self._lock:
            return book_id in self._summaries

    def on_change(self, change: ChangeEvent) -> None:
        if change.table == "pepi_books":
            book_id = change.row_id
        else:
            book_id = change.values.get("pepi_book_id")
        if book_id is None:
            logger.debug("Change on %s without book id; clearing all summaries", change.table)
            self.clear()
        else:
            self.invalidate_book(book_id)

    def attach(self, feed: ChangeFeed) -> None:
        for table in WATCHED_TABLES:
            feed.subscribe(table, self.on_change)


def get_view_cache() -> BookViewCache:
    return current_app.extensions["pepi_view_cache"]
