"""
Process-wide statement snapshot with an optional TTL.

Readers always see one complete snapshot: a refresh builds the new tuple
first and swaps it in under the lock. A failed refresh keeps the old one.
"""

import logging
import threading
import time
from typing import Iterable, Optional, Tuple, Union

from .models import Statement, parse_statements
from .ports import StatementSource

logger = logging.getLogger(__name__)


class StatementCache:
    """
    Lazily loads statements from a source and serves them until refreshed
    or, with ``ttl_seconds`` set, until the snapshot expires.
    """

    def __init__(self, source: StatementSource, ttl_seconds: Optional[float] = None):
        self.source = source
        self.ttl = ttl_seconds
        self._lock = threading.Lock()
        # (statements, loaded_at); replaced as a whole, never mutated
        self._entry: Optional[Tuple[Tuple[Statement, ...], float]] = None

    def _expired(self, entry) -> bool:
        return self.ttl is not None and time.time() - entry[1] > self.ttl

    def _load(self, documents) -> Tuple[Statement, ...]:
        return tuple(parse_statements(documents))

    def get(self) -> Tuple[Statement, ...]:
        entry = self._entry
        if entry is not None and not self._expired(entry):
            return entry[0]
        with self._lock:
            entry = self._entry
            if entry is None:
                logger.debug("Statement cache miss, loading from source")
                statements = self._load(self.source.fetch())
            elif self._expired(entry):
                logger.debug("Statement cache expired, refreshing from source")
                statements = self._load(self.source.refresh())
            else:
                return entry[0]
            self._entry = (statements, time.time())
            return statements

    def refresh(self) -> Tuple[Statement, ...]:
        statements = self._load(self.source.refresh())
        with self._lock:
            self._entry = (statements, time.time())
        logger.info(f"Statement cache refreshed: {len(statements)} statements")
        return statements

    def set(self, statements: Iterable[Union[Statement, dict]]) -> Tuple[Statement, ...]:
        """Replace the snapshot with the given statements (models or raw documents)."""
        snapshot = tuple(s if isinstance(s, Statement) else Statement.from_dict(s) for s in statements)
        with self._lock:
            self._entry = (snapshot, time.time())
        logger.debug(f"Statement cache set: {len(snapshot)} statements")
        return snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None

    def stats(self) -> dict:
        entry = self._entry
        return {
            "loaded": entry is not None,
            "statements": len(entry[0]) if entry else 0,
            "age_seconds": time.time() - entry[1] if entry else None,
            "ttl_seconds": self.ttl,
        }
