from datetime import datetime, timezone

import pytest

from xapi_query.errors import InvalidPeriodError, InvalidQueryError, NoDataError, QueryError
from xapi_query.query import MISSING, StatementQuery, resolve_path, time_bucket
from xapi_query.models import Statement
from xapi_query.sources import StaticStatementSource

INITIALIZED = "http://adlnet.gov/expapi/verbs/initialized"
COMPLETED = "http://adlnet.gov/expapi/verbs/completed"
TERMINATED = "http://adlnet.gov/expapi/verbs/terminated"
QUIZ_1 = "http://example.com/activities/quiz-1"


def _stamped(*timestamps):
    return [
        {
            "id": f"stmt-{i}",
            "actor": {"objectType": "Agent", "name": "Dana", "mbox": "mailto:dana@example.com"},
            "verb": {"id": COMPLETED},
            "object": {"objectType": "Activity", "id": "http://example.com/activities/a"},
            "timestamp": ts,
        }
        for i, ts in enumerate(timestamps)
    ]


# ─── Filtering / listing ─────────────────────────────────────────────────────

def test_all_returns_every_statement(grouping_statements):
    rows = StatementQuery.all().to_list()
    assert len(rows) == 6
    assert all(isinstance(row, Statement) for row in rows)


def test_where_on_unknown_value_returns_nothing(grouping_statements):
    assert StatementQuery.where({"actor.name": "Nobody"}).to_list() == []


def test_where_calls_are_anded(grouping_statements):
    chained = StatementQuery.where({"actor.name": "Bob"}).where({"verb.id": COMPLETED}).pluck("id")
    combined = StatementQuery.where({"actor.name": "Bob", "verb.id": COMPLETED}).pluck("id")
    assert chained == combined == ["7f0c6b1e-0005-4b7a-9d0e-3b1f0a000005"]


def test_where_accepts_keyword_conditions(grouping_statements):
    assert StatementQuery.where(verb=INITIALIZED).count() == 2


def test_where_none_matches_null_and_missing(grouping_statements):
    assert StatementQuery.where({"result": None}).count() == 5
    assert StatementQuery.where({"object.definition.description": None}).count() == 1


def test_where_walks_into_language_maps(grouping_statements):
    assert StatementQuery.where({"object.definition.name.en-US": "Math 101"}).count() == 4


def test_where_on_computed_attributes(grouping_statements):
    assert StatementQuery.where({"actor.ifi": "mailto:bob@example.com"}).count() == 2
    assert StatementQuery.where({"verb.name": "terminated"}).pluck("actor.name") == ["Alice"]


def test_since_string_and_datetime_agree(grouping_statements):
    by_string = StatementQuery.since("2025-01-03T00:00:00Z").pluck("verb.id")
    by_datetime = StatementQuery.since(datetime(2025, 1, 3, tzinfo=timezone.utc)).pluck("verb.id")
    assert by_string == by_datetime == [TERMINATED]


def test_since_is_inclusive(grouping_statements):
    assert StatementQuery.since("2025-01-03T16:00:00Z").count() == 1


def test_since_naive_datetime_is_utc(grouping_statements):
    assert StatementQuery.since(datetime(2025, 1, 2, 10, 0)).count() == 2


def test_since_unparsable_matches_nothing(grouping_statements):
    assert StatementQuery.since("not a timestamp").count() == 0


def test_where_timestamp_datetime_is_lower_bound(grouping_statements):
    since = datetime(2025, 1, 2, tzinfo=timezone.utc)
    assert StatementQuery.where({"timestamp": since}).count() == 3


def test_since_combined_with_verb(grouping_statements):
    assert StatementQuery.where({"verb.id": INITIALIZED}).since("2025-01-01T10:00:00Z").count() == 2
    assert StatementQuery.where({"verb.id": INITIALIZED}).since("2025-01-02T00:00:00Z").pluck("actor.name") == ["Bob"]


# ─── Ordering / limiting / projection ────────────────────────────────────────

def test_order_timestamp_ascending_and_descending(grouping_statements):
    asc = StatementQuery.order("timestamp", "asc").pluck("timestamp")
    desc = StatementQuery.order("timestamp", "desc").pluck("timestamp")
    assert asc == sorted(asc)
    assert desc == list(reversed(asc))


def test_order_accepts_mapping(grouping_statements):
    assert StatementQuery.order({"verb.id": "desc"}).pluck("verb.id") == StatementQuery.order("verb.id", "desc").pluck("verb.id")


def test_desc_is_exact_reverse_of_stable_asc(grouping_statements):
    asc = StatementQuery.order("actor.name").pluck("id")
    desc = StatementQuery.order("actor.name", "desc").pluck("id")
    assert desc == list(reversed(asc))
    # ties keep fixture order in asc
    assert asc[:3] == [
        "7f0c6b1e-0001-4b7a-9d0e-3b1f0a000001",
        "7f0c6b1e-0002-4b7a-9d0e-3b1f0a000002",
        "7f0c6b1e-0006-4b7a-9d0e-3b1f0a000006",
    ]


def test_missing_values_sort_first(grouping_statements):
    values = StatementQuery.order("result.completion").pluck("result.completion")
    assert values == [None, None, None, None, None, True]


def test_order_rejects_unknown_direction():
    with pytest.raises(InvalidQueryError):
        StatementQuery.order("timestamp", "sideways")


def test_limit(grouping_statements):
    assert len(StatementQuery.limit(1).to_list()) == 1
    assert StatementQuery.limit(0).to_list() == []


@pytest.mark.parametrize("bad", [-1, 1.5, "2", True])
def test_limit_rejects_bad_values(bad):
    with pytest.raises(InvalidQueryError):
        StatementQuery.limit(bad)


def test_select_and_distinct(grouping_statements):
    assert StatementQuery.select("actor.name").to_list() == ["Alice", "Alice", "Charlie", "Bob", "Bob", "Alice"]
    assert StatementQuery.select("actor.name").distinct().to_list() == ["Alice", "Charlie", "Bob"]


def test_distinct_dedupes_unhashable_values(grouping_statements):
    descriptions = StatementQuery.select("object.definition.description").distinct().to_list()
    assert descriptions == [
        {"en-US": "Introductory math course"},
        {"en-US": "Intermediate science course"},
        None,
    ]


def test_iteration_first_exists(grouping_statements):
    names = [s.actor.name for s in StatementQuery.where({"actor.name": "Bob"})]
    assert names == ["Bob", "Bob"]
    assert StatementQuery.order("timestamp", "desc").first().verb.id == TERMINATED
    assert StatementQuery.where({"actor.name": "Nobody"}).first() is None
    assert StatementQuery.where({"actor.name": "Charlie"}).exists()
    assert not StatementQuery.where({"actor.name": "Nobody"}).exists()
    assert len(StatementQuery.where({"actor.name": "Alice"})) == 3


# ─── Counting ────────────────────────────────────────────────────────────────

def test_count_all(grouping_statements):
    assert StatementQuery.count() == 6


def test_count_with_conditions(grouping_statements):
    assert StatementQuery.count({"actor.name": "Bob"}) == 2
    assert StatementQuery.count({"actor.name": "Bob", "verb.id": COMPLETED}) == 1


def test_count_field_counts_non_null(grouping_statements):
    assert StatementQuery.count("result.completion") == 1
    assert StatementQuery.count("object.definition.description") == 5


def test_count_field_with_distinct(grouping_statements):
    assert StatementQuery.distinct().count("actor.name") == 3


def test_count_respects_limit(grouping_statements):
    assert StatementQuery.limit(4).count() == 4


def test_count_select_distinct_counts_values(grouping_statements):
    assert StatementQuery.select("verb.id").distinct().count() == 4


def test_chaining_after_count_fails(grouping_statements):
    with pytest.raises(AttributeError):
        StatementQuery.where({"actor.name": "Alice"}).count().where({"verb.id": TERMINATED})


# ─── Grouping ────────────────────────────────────────────────────────────────

def test_group_count(grouping_statements):
    assert StatementQuery.group("actor.name").count() == {"Alice": 3, "Bob": 2, "Charlie": 1}


def test_group_after_where(grouping_statements):
    assert StatementQuery.where({"verb.id": INITIALIZED}).group("actor.name").count() == {"Alice": 1, "Bob": 1}


def test_group_count_with_inline_filter(grouping_statements):
    assert StatementQuery.group("actor.name").count({"verb.id": COMPLETED}) == {"Bob": 1}


def test_group_after_since(grouping_statements):
    result = StatementQuery.where({"actor.name": "Alice"}).since("2025-01-03T15:00:00Z").group("verb.id").count()
    assert result == {TERMINATED: 1}


def test_group_missing_field_uses_missing_bucket(grouping_statements):
    assert StatementQuery.group("nonexistent.field").count() == {MISSING: 6}


def test_group_by_language_map(grouping_statements):
    result = StatementQuery.group("object.definition.description").count()
    assert result == {
        (("en-US", "Introductory math course"),): 4,
        (("en-US", "Intermediate science course"),): 1,
        MISSING: 1,
    }


def test_group_counts_sum_to_total(grouping_statements):
    grouped = StatementQuery.group("object.definition.description").count()
    assert sum(grouped.values()) == StatementQuery.count()


def test_group_order_by_count(grouping_statements):
    assert list(StatementQuery.order("count", "asc").group("actor.name").count().items()) == [
        ("Charlie", 1), ("Bob", 2), ("Alice", 3),
    ]
    assert list(StatementQuery.order({"count": "desc"}).group("actor.name").count().items()) == [
        ("Alice", 3), ("Bob", 2), ("Charlie", 1),
    ]


def test_group_limit_applies_to_groups(grouping_statements):
    assert StatementQuery.order("count", "asc").limit(1).group("actor.name").count() == {"Charlie": 1}
    assert StatementQuery.group("actor.name").order("count", "desc").limit(2).count() == {"Alice": 3, "Bob": 2}


def test_group_ordered_by_its_own_key(grouping_statements):
    result = StatementQuery.group("actor.name").order("actor.name", "desc").count()
    assert list(result) == ["Charlie", "Bob", "Alice"]


def test_top_actor_end_to_end(grouping_statements):
    assert StatementQuery.group("actor.name").order("count", "desc").limit(1).count() == {"Alice": 3}


def test_group_projection_counts_distinct_values(grouping_statements):
    result = StatementQuery.group("actor.name").select("verb.id").distinct().count()
    assert result == {"Alice": 3, "Charlie": 1, "Bob": 2}


def test_groups_returns_members(grouping_statements):
    groups = StatementQuery.group("actor.name").select("verb.id").groups()
    assert groups["Bob"] == [INITIALIZED, COMPLETED]


def test_groups_requires_group():
    with pytest.raises(InvalidQueryError):
        StatementQuery(statements=[]).groups()


# ─── Time buckets ────────────────────────────────────────────────────────────

def test_group_by_day_week_month(grouping_statements):
    assert StatementQuery.group("timestamp", "day").count() == {"2025-01-01": 3, "2025-01-02": 2, "2025-01-03": 1}
    assert StatementQuery.group("timestamp", "week").count() == {"2025-W01": 6}
    assert StatementQuery.group("timestamp", period="month").count() == {"2025-01": 6}


def test_group_by_day_within_range(grouping_statements):
    assert StatementQuery.since("2025-01-02T00:00:00Z").group("timestamp", "day").count() == {"2025-01-02": 2, "2025-01-03": 1}
    assert StatementQuery.since("2030-01-01T00:00:00Z").group("timestamp", "day").count() == {}


def test_group_by_day_after_filter_and_order(grouping_statements):
    result = StatementQuery.where({"actor.name": "Alice"}).order("timestamp", "asc").group("timestamp", "day").count()
    assert result == {"2025-01-01": 2, "2025-01-03": 1}


def test_group_by_week_filtered_and_limited(grouping_statements):
    result = StatementQuery.where({"verb.id": INITIALIZED}).group("timestamp", "week").order("count", "desc").limit(1).count()
    assert result == {"2025-W01": 2}


def test_group_by_month_with_two_wheres(grouping_statements):
    result = (
        StatementQuery.where({"actor.name": "Bob"})
        .where({"verb.id": COMPLETED})
        .group("timestamp", "month")
        .order("count", "asc")
        .count()
    )
    assert result == {"2025-01": 1}


def test_week_buckets_split_on_iso_week():
    query = StatementQuery(statements=_stamped("2025-01-01T08:00:00Z", "2025-01-02T08:00:00Z", "2025-01-08T08:00:00Z"))
    assert query.group("timestamp", "week").count() == {"2025-W01": 2, "2025-W02": 1}
    day_query = StatementQuery(statements=_stamped("2025-01-01T08:00:00Z", "2025-01-02T08:00:00Z", "2025-01-08T08:00:00Z"))
    assert day_query.group("timestamp", "day").count() == {"2025-01-01": 1, "2025-01-02": 1, "2025-01-08": 1}


def test_time_bucket_uses_iso_week_year_and_utc():
    assert time_bucket(datetime(2024, 12, 30, tzinfo=timezone.utc), "week") == "2025-W01"
    assert time_bucket(datetime(2021, 1, 1, tzinfo=timezone.utc), "week") == "2020-W53"
    assert time_bucket("2025-01-01T23:30:00-05:00", "day") == "2025-01-02"
    assert time_bucket(None, "month") is MISSING


def test_unknown_period_fails_immediately():
    with pytest.raises(InvalidPeriodError):
        StatementQuery.group("timestamp", "year")
    assert issubclass(InvalidPeriodError, QueryError)


# ─── Averages ────────────────────────────────────────────────────────────────

def test_average_skips_missing_scores(average_statements):
    assert StatementQuery.average("result.score.raw") == pytest.approx(74.8)


def test_average_filtered(average_statements):
    assert StatementQuery.where({"object.id": QUIZ_1}).average("result.score.raw") == pytest.approx(62.667, abs=1e-3)
    assert StatementQuery.where({"object.id": QUIZ_1}).since("2025-10-03T00:00:00Z").average("result.score.raw") == pytest.approx(58.0)
    passed = StatementQuery.where({"object.id": QUIZ_1}).where({"verb.id": "http://adlnet.gov/expapi/verbs/passed"})
    assert passed.average("result.score.raw") == pytest.approx(85.0)


def test_average_requires_field(average_statements):
    with pytest.raises(InvalidQueryError):
        StatementQuery.where({"object.id": QUIZ_1}).average()


def test_average_of_absent_field_is_zero(average_statements):
    assert StatementQuery.average("unknown.parameter") == 0.0


def test_average_of_no_statements_raises(average_statements):
    with pytest.raises(NoDataError):
        StatementQuery.where({"object.id": "http://example.com/activities/none"}).average("result.score.raw")


def test_average_rejects_non_numeric(average_statements):
    with pytest.raises(InvalidQueryError):
        StatementQuery.average("actor.name")


def test_average_of_booleans_is_a_rate(average_statements):
    assert StatementQuery.average("result.success") == pytest.approx(0.75)


def test_grouped_average(average_statements):
    result = StatementQuery.group("object.id").average("result.score.raw")
    assert result[QUIZ_1] == pytest.approx(62.667, abs=1e-3)
    assert result["http://example.com/activities/quiz-2"] == pytest.approx(93.0)


def test_grouped_average_all_null_bucket_is_zero(average_statements):
    result = StatementQuery.group("verb.id").average("result.score.raw")
    assert result["http://adlnet.gov/expapi/verbs/launched"] == 0.0


def test_grouped_average_ordered(average_statements):
    result = StatementQuery.group("actor.name").order("average", "desc").average("result.score.raw")
    assert list(result) == ["Alice", "Bob", "Charlie"]


def test_chaining_after_average_fails(average_statements):
    with pytest.raises(AttributeError):
        StatementQuery.where({"actor.name": "Alice"}).average("unknown.parameter").where({"verb.id": TERMINATED})


# ─── Paths / data / frames ───────────────────────────────────────────────────

def test_resolve_path_distinguishes_missing_from_null(statement_doc):
    statement = Statement.from_dict(statement_doc)
    assert resolve_path(statement, "result.score.raw") == 50
    assert resolve_path(statement, "object.definition.name.en-US") == "Question 3"
    assert resolve_path(statement, "context.revision") is None
    assert resolve_path(statement, "context.revision.more") is MISSING
    assert resolve_path(statement, "actor.no_such_field") is MISSING
    assert resolve_path(statement, "result.duration_seconds") == 90.0


def test_explicit_statements_bypass_cache():
    query = StatementQuery(statements=_stamped("2025-01-01T08:00:00Z"))
    assert query.count() == 1
    assert StatementQuery._cache is None


def test_set_and_refresh_data(grouping_statements):
    StatementQuery.set_data(_stamped("2025-02-01T00:00:00Z"))
    assert StatementQuery.count() == 1
    StatementQuery.refresh_data()
    assert StatementQuery.count() == 6


def test_set_data_without_source():
    StatementQuery.set_data(_stamped("2025-02-01T00:00:00Z", "2025-02-02T00:00:00Z"))
    assert StatementQuery.count() == 2


def test_subclass_shares_installed_source(grouping_statements):
    class CourseStatements(StatementQuery):
        pass

    assert CourseStatements.count() == 6
    CourseStatements.use(StaticStatementSource([]))
    assert CourseStatements.count() == 0
    assert StatementQuery.count() == 6


def test_subclass_set_data_keeps_parent_snapshot(grouping_statements):
    class CourseStatements(StatementQuery):
        pass

    CourseStatements.set_data(_stamped("2025-02-01T00:00:00Z"))
    assert CourseStatements.count() == 1
    assert StatementQuery.count() == 6


def test_subclass_with_verbs_does_not_inherit_source(grouping_statements):
    class CompletedStatements(StatementQuery):
        VERBS = {"completed": COMPLETED}

    cache = CompletedStatements.statement_cache()
    assert cache is not StatementQuery.statement_cache()
    assert cache.source.verbs == [COMPLETED]


def test_resolve_verb_override(grouping_statements):
    class Shorthand(StatementQuery):
        def resolve_verb(self, verb):
            return f"http://adlnet.gov/expapi/verbs/{verb}"

    assert Shorthand.where(verb="initialized").count() == 2
    assert Shorthand.where({"verb.id": "completed"}).count() == 1


def test_to_frame_default_columns(grouping_statements):
    df = StatementQuery.order("timestamp").to_frame()
    assert len(df) == 6
    assert df["actor"].tolist() == ["Alice", "Alice", "Charlie", "Bob", "Bob", "Alice"]
    assert str(df["timestamp"].dt.tz) == "UTC"
    assert df["duration_seconds"].dropna().tolist() == [5400.0]


def test_to_frame_selected_columns(grouping_statements):
    df = StatementQuery.where({"actor.name": "Bob"}).to_frame(["actor.name", "verb.id"])
    assert list(df.columns) == ["actor.name", "verb.id"]
    assert df["verb.id"].tolist() == [INITIALIZED, COMPLETED]

    named = StatementQuery.limit(2).to_frame({"who": "actor.name"})
    assert list(named.columns) == ["who"]


def test_to_frame_with_select(grouping_statements):
    df = StatementQuery.select("actor.name").distinct().to_frame()
    assert df["actor.name"].tolist() == ["Alice", "Charlie", "Bob"]
