"""
xapi_query: query and aggregate xAPI statements pulled from Learning Record Stores.
"""

from .cache import StatementCache
from .config import Connection, configuration, configure, finalize_configuration, load_connections
from .errors import (
    ConfigurationError,
    HttpError,
    InvalidDurationError,
    InvalidPeriodError,
    InvalidQueryError,
    NoDataError,
    QueryError,
    StatementParseError,
    StoreError,
    StoreUnreachableError,
    XAPIQueryError,
)
from .localization import get_localized_value
from .models import Statement, parse_statements
from .profile import ProfileStatementQuery, extract_verbs, profile_query, query_for_profile
from .query import MISSING, StatementQuery, resolve_path
from .sources import RemoteStatementSource, StaticStatementSource
from .xapi_client import XAPIClient

__version__ = "0.1.0"
