"""
StatementQuery: fluent filtering, grouping and aggregation over statements.

    StatementQuery.where({"verb": COMPLETED}).group("actor.name").order("count", "desc").limit(5).count()

Directives only record what to do. Nothing runs until a terminal call
(to_list, count, average, to_frame, ...), and execution always follows the
same order:

  1. take the cached statement snapshot
  2. apply every where() set (AND across and within sets)
  3. ungrouped: sort, limit, then select/distinct
     grouped:   bucket by the group key, project each bucket, aggregate,
                sort the buckets and keep the first ``limit`` of them
"""

import functools
import logging
import numbers
import types
from collections.abc import Mapping
from dataclasses import dataclass, fields, is_dataclass
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .cache import StatementCache
from .errors import InvalidPeriodError, InvalidQueryError, NoDataError
from .models import Statement, Verb, parse_instant
from .ports import StatementSource
from .sources import RemoteStatementSource, StaticStatementSource

logger = logging.getLogger(__name__)

PERIODS = ("day", "week", "month")
DIRECTIONS = ("asc", "desc")

DEFAULT_FRAME_COLUMNS = {
    "id": "id",
    "actor": "actor.name",
    "actor_ifi": "actor.ifi",
    "verb": "verb.id",
    "verb_display": "verb.name",
    "object_id": "object.id",
    "object_type": "object.object_type",
    "timestamp": "timestamp",
    "score_raw": "result.score.raw",
    "score_scaled": "result.score.scaled",
    "success": "result.success",
    "completion": "result.completion",
    "duration_seconds": "result.duration_seconds",
    "registration": "context.registration",
    "platform": "context.platform",
}
TIMESTAMP_PATHS = ("timestamp", "stored")


class _Missing:
    """Marker for a path that does not resolve, as opposed to a stored null."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False

    def __reduce__(self):
        return "MISSING"


MISSING = _Missing()


# ─── Path resolution ─────────────────────────────────────────────────────────

@functools.lru_cache(maxsize=None)
def _accessors(cls: type) -> FrozenSet[str]:
    names = {f.name for f in fields(cls)} if is_dataclass(cls) else set()
    return frozenset(names | set(getattr(cls, "QUERY_ATTRIBUTES", ())))


def resolve_path(target: Any, path: str) -> Any:
    """
    Walk ``path`` ("object.definition.name") through model attributes and
    mapping keys. Returns MISSING for an unknown segment or for anything past
    a null; a null at the last segment is returned as None.
    """
    current = target
    for segment in path.split("."):
        if current is None or current is MISSING:
            return MISSING
        if isinstance(current, Mapping):
            current = current.get(segment, MISSING)
        elif segment in _accessors(type(current)):
            current = getattr(current, segment)
        else:
            return MISSING
    return current


def _absent(value: Any) -> bool:
    return value is None or value is MISSING


def _present(value: Any) -> Any:
    return None if value is MISSING else value


def _hashable(value: Any) -> Any:
    """Group/distinct key for ``value``; nulls collapse to MISSING."""
    if _absent(value):
        return MISSING
    try:
        hash(value)
        return value
    except TypeError:
        pass
    if isinstance(value, Mapping):
        return tuple((key, _hashable(item)) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return tuple(_hashable(item) for item in value)
    if hasattr(value, "to_dict"):
        return _hashable(value.to_dict())
    return repr(value)


def _unique(items: Iterable, key: Callable[[Any], Any]) -> List:
    seen = set()
    kept = []
    for item in items:
        marker = key(item)
        if marker in seen:
            continue
        seen.add(marker)
        kept.append(item)
    return kept


def _statement_identity(item: Any) -> Any:
    statement_id = getattr(item, "id", None)
    return statement_id if statement_id is not None else id(item)


def _order_key(value: Any) -> Tuple:
    if _absent(value):
        return (0, 0)
    return (1, value)


def _sorted(items: Sequence, key: Callable[[Any], Any], direction: str) -> List:
    try:
        ordered = sorted(items, key=lambda item: _order_key(key(item)))
    except TypeError as e:
        raise InvalidQueryError(f"Cannot order values of mixed types: {e}") from e
    if direction == "desc":
        ordered.reverse()
    return ordered


def time_bucket(value: Any, period: str) -> Any:
    """Format an instant into its UTC day, ISO week or month bucket."""
    if _absent(value):
        return MISSING
    if not isinstance(value, datetime):
        try:
            value = parse_instant(value)
        except (TypeError, ValueError) as e:
            raise InvalidQueryError(f"Cannot bucket non-timestamp value {value!r} by {period}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if period == "day":
        return value.strftime("%Y-%m-%d")
    if period == "week":
        year, week, _ = value.isocalendar()
        return f"{year:04d}-W{week:02d}"
    return value.strftime("%Y-%m")


@dataclass(frozen=True)
class _AtLeast:
    """Timestamp lower bound; an unparsable bound matches nothing."""

    instant: Optional[datetime]

    def matches(self, value: Any) -> bool:
        if self.instant is None or not isinstance(value, datetime):
            return False
        return value >= self.instant


def _as_instant(value: Any) -> Optional[datetime]:
    try:
        return parse_instant(value)
    except (TypeError, ValueError):
        logger.warning(f"Unparsable timestamp {value!r}; condition will match nothing")
        return None


# ─── Query ───────────────────────────────────────────────────────────────────

class _querymethod:
    """
    Directive usable on a query or on the query class itself; on the class
    it starts a fresh query, so ``Q.where(...)`` means ``Q().where(...)``.
    """

    def __init__(self, func):
        self.__func__ = func
        functools.update_wrapper(self, func)

    def __get__(self, instance, owner=None):
        if instance is None:
            instance = owner()
        return types.MethodType(self.__func__, instance)


Conditions = Tuple[Tuple[str, Any], ...]


class StatementQuery:
    """
    Mutable query builder over the process-wide statement snapshot.

    Subclasses may override ``resolve_verb`` to accept shorthand verb names
    and set ``VERBS`` to restrict what the default remote source fetches.
    """

    VERBS: ClassVar[Dict[str, str]] = {}
    _cache: ClassVar[Optional[StatementCache]] = None
    _shared: ClassVar[bool] = False

    def __init__(self, statements: Optional[Iterable[Union[Statement, Dict]]] = None):
        self._statements: Optional[Tuple[Statement, ...]] = None
        if statements is not None:
            self._statements = tuple(
                s if isinstance(s, Statement) else Statement.from_dict(s) for s in statements
            )
        self._conditions: List[Conditions] = []
        self._sort_key: Optional[str] = None
        self._direction = "asc"
        self._limit: Optional[int] = None
        self._group_by: Optional[str] = None
        self._period: Optional[str] = None
        self._select: Optional[str] = None
        self._distinct = False

    def __repr__(self):
        parts = [f"where={len(self._conditions)}"]
        if self._group_by:
            parts.append(f"group={self._group_by!r}" + (f"/{self._period}" if self._period else ""))
        if self._sort_key:
            parts.append(f"order={self._sort_key!r} {self._direction}")
        if self._limit is not None:
            parts.append(f"limit={self._limit}")
        if self._select:
            parts.append(f"select={self._select!r}")
        if self._distinct:
            parts.append("distinct")
        return f"<{type(self).__name__} {' '.join(parts)}>"

    # ── data ─────────────────────────────────────────────────────────────────

    @classmethod
    def use(cls, source: StatementSource, ttl_seconds: Optional[float] = None) -> StatementCache:
        """Serve this query class (and subclasses without their own VERBS) from ``source``."""
        cls._cache = StatementCache(source, ttl_seconds=ttl_seconds)
        cls._shared = True
        return cls._cache

    @classmethod
    def statement_cache(cls) -> StatementCache:
        """
        The cache this class reads. Each class keeps its own; a class that
        does not declare VERBS falls back to a source ``use()``d on a base.
        """
        for klass in cls.__mro__:
            cache = klass.__dict__.get("_cache")
            if cache is not None and (klass is cls or klass.__dict__.get("_shared")):
                return cache
            if "VERBS" in klass.__dict__:
                break
        verbs = list(cls.VERBS.values()) or None
        logger.info(f"{cls.__name__}: no source installed, using configured LRS instances")
        cls._cache = StatementCache(RemoteStatementSource(verbs=verbs))
        cls._shared = False
        return cls._cache

    @classmethod
    def data(cls) -> Tuple[Statement, ...]:
        return cls.statement_cache().get()

    @classmethod
    def refresh_data(cls) -> Tuple[Statement, ...]:
        return cls.statement_cache().refresh()

    @classmethod
    def set_data(cls, statements: Iterable[Union[Statement, Dict]]) -> Tuple[Statement, ...]:
        cache = cls.__dict__.get("_cache")
        if cache is None:
            cache = cls.use(StaticStatementSource([]))
        return cache.set(statements)

    def _snapshot(self) -> Tuple[Statement, ...]:
        if self._statements is not None:
            return self._statements
        return type(self).data()

    # ── directives ───────────────────────────────────────────────────────────

    def resolve_verb(self, verb: Any) -> Any:
        """Map a verb shorthand to its IRI. Identity unless overridden."""
        return verb

    @_querymethod
    def all(self) -> "StatementQuery":
        return self

    @_querymethod
    def where(self, conditions: Optional[Mapping] = None, **kwargs) -> "StatementQuery":
        merged = dict(conditions or {})
        merged.update(kwargs)
        condition_set = []
        for path, expected in merged.items():
            path = str(path)
            if path == "verb" and isinstance(expected, Verb):
                expected = expected.id
                path = "verb.id"
            elif path in ("verb", "verb.id"):
                path = "verb.id"
                if expected is not None:
                    expected = self.resolve_verb(expected)
            if path == "timestamp" and isinstance(expected, datetime):
                expected = _AtLeast(_as_instant(expected))
            condition_set.append((path, expected))
        self._conditions.append(tuple(condition_set))
        return self

    @_querymethod
    def since(self, timestamp: Union[datetime, str]) -> "StatementQuery":
        self._conditions.append((("timestamp", _AtLeast(_as_instant(timestamp))),))
        return self

    @_querymethod
    def order(self, key: Union[str, Mapping], direction: str = "asc") -> "StatementQuery":
        if isinstance(key, Mapping):
            if len(key) != 1:
                raise InvalidQueryError(f"order() takes a single key, got {list(key)}")
            key, direction = next(iter(key.items()))
        direction = str(direction).lower()
        if direction not in DIRECTIONS:
            raise InvalidQueryError(f"Unknown order direction {direction!r}; use 'asc' or 'desc'")
        self._sort_key = str(key)
        self._direction = direction
        return self

    @_querymethod
    def limit(self, n: int) -> "StatementQuery":
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise InvalidQueryError(f"limit() needs a non-negative integer, got {n!r}")
        self._limit = n
        return self

    @_querymethod
    def group(self, path: str, period: Optional[str] = None) -> "StatementQuery":
        if period is not None and period not in PERIODS:
            raise InvalidPeriodError(f"Unsupported period {period!r}; use one of {', '.join(PERIODS)}")
        self._group_by = path
        self._period = period
        return self

    @_querymethod
    def select(self, path: str) -> "StatementQuery":
        self._select = path
        return self

    @_querymethod
    def distinct(self, flag: bool = True) -> "StatementQuery":
        self._distinct = bool(flag)
        return self

    # ── execution ────────────────────────────────────────────────────────────

    @staticmethod
    def _matches(statement: Statement, path: str, expected: Any) -> bool:
        actual = resolve_path(statement, path)
        if isinstance(expected, _AtLeast):
            return expected.matches(actual)
        if expected is None:
            return _absent(actual)
        if actual is MISSING:
            return False
        return actual == expected

    def _filtered(self) -> List[Statement]:
        return [
            statement
            for statement in self._snapshot()
            if all(
                self._matches(statement, path, expected)
                for condition_set in self._conditions
                for path, expected in condition_set
            )
        ]

    def _project(self, statements: Sequence[Statement]) -> List:
        if self._select:
            items = [_present(resolve_path(s, self._select)) for s in statements]
            return _unique(items, _hashable) if self._distinct else items
        if self._distinct:
            return _unique(statements, _statement_identity)
        return list(statements)

    def _rows(self) -> List[Statement]:
        """Filtered, sorted and limited statements (ungrouped path)."""
        rows = self._filtered()
        if self._sort_key is not None:
            key = self._sort_key
            rows = _sorted(rows, lambda s: resolve_path(s, key), self._direction)
        if self._limit is not None:
            rows = rows[: self._limit]
        return rows

    def _group_key(self, statement: Statement) -> Any:
        value = resolve_path(statement, self._group_by)
        if self._period:
            value = time_bucket(value, self._period)
        return _hashable(value)

    def _buckets(self) -> Dict[Any, List[Statement]]:
        buckets: Dict[Any, List[Statement]] = {}
        for statement in self._filtered():
            buckets.setdefault(self._group_key(statement), []).append(statement)
        return buckets

    def _aggregate(self, fn: Callable[[List[Statement]], Any]) -> Dict[Any, Any]:
        results = {key: fn(members) for key, members in self._buckets().items()}
        items = list(results.items())
        if self._sort_key is not None:
            if self._sort_key == self._group_by:
                items = _sorted(items, lambda item: item[0], self._direction)
            else:
                items = _sorted(items, lambda item: item[1], self._direction)
        if self._limit is not None:
            items = items[: self._limit]
        return dict(items)

    def _count(self, statements: Sequence[Statement], field: Optional[str]) -> int:
        if field is None:
            return len(self._project(statements))
        values = [v for v in (resolve_path(s, field) for s in statements) if not _absent(v)]
        if self._distinct:
            values = _unique(values, _hashable)
        return len(values)

    @staticmethod
    def _average(statements: Sequence[Statement], field: str) -> float:
        if not statements:
            raise NoDataError(f"Cannot average {field!r} over zero statements")
        values = []
        for statement in statements:
            value = resolve_path(statement, field)
            if _absent(value):
                continue
            if not isinstance(value, numbers.Number):
                raise InvalidQueryError(f"Cannot average non-numeric value {value!r} at {field!r}")
            values.append(float(value))
        if not values:
            return 0.0
        return float(np.mean(values))

    # ── terminals ────────────────────────────────────────────────────────────

    @_querymethod
    def count(self, field: Union[str, Mapping, None] = None, where: Optional[Mapping] = None) -> Union[int, Dict[Any, int]]:
        """
        Ungrouped: number of matching statements (or projected values), or
        the number with a non-null ``field``. Grouped: that count per bucket.
        ``count({"verb": X})`` filters first.
        """
        if isinstance(field, Mapping):
            field, where = None, field
        if where:
            self.where(where)
        if self._group_by is None:
            return self._count(self._rows(), field)
        return self._aggregate(lambda members: self._count(members, field))

    @_querymethod
    def average(self, field: Optional[str] = None) -> Union[float, Dict[Any, float]]:
        if not field:
            raise InvalidQueryError("average() requires a field path")
        if self._group_by is None:
            return self._average(self._rows(), field)
        return self._aggregate(lambda members: self._average(members, field))

    def to_list(self) -> List:
        """Materialized rows; grouping is ignored here (use groups())."""
        return self._project(self._rows())

    def groups(self) -> Dict[Any, List]:
        """Bucket key -> projected members, in first-seen order."""
        if self._group_by is None:
            raise InvalidQueryError("groups() needs group() first")
        return {key: self._project(members) for key, members in self._buckets().items()}

    def __iter__(self) -> Iterator:
        return iter(self.to_list())

    def __len__(self) -> int:
        return len(self.to_list())

    def first(self) -> Any:
        rows = self.to_list()
        return rows[0] if rows else None

    def exists(self) -> bool:
        return bool(self._filtered())

    def pluck(self, path: str) -> List:
        return [_present(resolve_path(row, path)) for row in self.to_list()]

    def to_frame(self, columns: Union[Sequence[str], Mapping, None] = None) -> pd.DataFrame:
        """Rows as a DataFrame, one column per dotted path."""
        rows = self.to_list()
        if self._select:
            return pd.DataFrame({self._select: rows})

        if columns is None:
            columns = DEFAULT_FRAME_COLUMNS
        elif not isinstance(columns, Mapping):
            columns = {path: path for path in columns}

        records = [
            {name: _present(resolve_path(row, path)) for name, path in columns.items()}
            for row in rows
        ]
        df = pd.DataFrame(records, columns=list(columns))
        for name, path in columns.items():
            if path in TIMESTAMP_PATHS:
                df[name] = pd.to_datetime(df[name], utc=True, errors="coerce")
        return df
