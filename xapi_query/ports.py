"""Port definition for anything that can supply raw xAPI statements."""

from typing import Dict, Protocol, Sequence, runtime_checkable


@runtime_checkable
class StatementSource(Protocol):
    """Supplies an ordered collection of raw statement documents."""

    def fetch(self) -> Sequence[Dict]:
        """Return all statements, possibly from a source-side cache."""

    def refresh(self) -> Sequence[Dict]:
        """Drop any source-side cache and return freshly fetched statements."""
