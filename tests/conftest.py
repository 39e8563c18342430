import json
from pathlib import Path

import pytest

from xapi_query.config import reset_configuration
from xapi_query.query import StatementQuery
from xapi_query.sources import StaticStatementSource

FIXTURES = Path(__file__).parent / "fixtures"


def load_fixture(name):
    with open(FIXTURES / name, "r", encoding="utf-8") as f:
        return json.load(f)


def _reset_caches():
    StatementQuery._cache = None
    StatementQuery._shared = False


@pytest.fixture(autouse=True)
def clean_state():
    reset_configuration()
    _reset_caches()
    yield
    reset_configuration()
    _reset_caches()


@pytest.fixture
def statement_doc():
    return load_fixture("statement.json")


@pytest.fixture
def grouping_statements():
    StatementQuery.use(StaticStatementSource(load_fixture("grouping_statements.json")))
    return StatementQuery


@pytest.fixture
def average_statements():
    StatementQuery.use(StaticStatementSource(load_fixture("average_statements.json")))
    return StatementQuery
