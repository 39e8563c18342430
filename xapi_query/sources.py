"""
Statement sources: remote LRS instances or an in-memory/JSON document list.
"""

import json
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from .config import Connection, configuration
from .errors import ConfigurationError
from .xapi_client import XAPIClient

logger = logging.getLogger(__name__)


class StaticStatementSource:
    """Serves a fixed list of raw statement documents."""

    def __init__(self, documents: Iterable[Dict]):
        self._documents = list(documents)

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "StaticStatementSource":
        """Load a JSON array of statements, or an LRS response with a ``statements`` key."""
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
        if isinstance(document, dict):
            document = document.get("statements", [])
        if not isinstance(document, list):
            raise ConfigurationError(f"{path} does not hold a list of statements")
        logger.debug(f"Loaded {len(document)} statements from {path}")
        return cls(document)

    def fetch(self) -> List[Dict]:
        return list(self._documents)

    def refresh(self) -> List[Dict]:
        return self.fetch()


class RemoteStatementSource:
    """
    Pulls statements from every configured LRS.

    With ``verbs`` set, one filtered request runs per verb IRI per store;
    otherwise the whole statements resource is read. Statements seen twice
    (same id) are kept once, first occurrence wins.
    """

    def __init__(
        self,
        connections: Optional[Sequence[Connection]] = None,
        verbs: Optional[Iterable[str]] = None,
        client_factory: Callable[[Connection], XAPIClient] = XAPIClient.from_connection,
        max_statements: Optional[int] = None,
    ):
        self.connections = list(connections) if connections is not None else None
        self.verbs = list(verbs) if verbs else []
        self.client_factory = client_factory
        self.max_statements = max_statements

    def _connections(self) -> List[Connection]:
        connections = self.connections
        if connections is None:
            connections = configuration().remote_lrs_instances
        if not connections:
            raise ConfigurationError("No remote LRS instances are configured")
        return list(connections)

    def _fetch_from(self, connection: Connection) -> List[Dict]:
        client = self.client_factory(connection)
        if not self.verbs:
            return client.fetch_statements(max_statements=self.max_statements)
        documents: List[Dict] = []
        for verb in self.verbs:
            documents.extend(client.fetch_statements(verb=verb, max_statements=self.max_statements))
        return documents

    def fetch(self) -> List[Dict]:
        statements: List[Dict] = []
        seen = set()
        for connection in self._connections():
            logger.info(f"Reading statements from LRS '{connection.name or connection.url}'")
            for document in self._fetch_from(connection):
                statement_id = document.get("id") if isinstance(document, dict) else None
                if statement_id is not None:
                    if statement_id in seen:
                        continue
                    seen.add(statement_id)
                statements.append(document)
        logger.info(f"Fetched {len(statements)} unique statements")
        return statements

    def refresh(self) -> List[Dict]:
        return self.fetch()
