import datetime

import pytest
from bson import Binary, Decimal128, ObjectId

from dbx_shell.interactive.literals import (
    Step,
    parse_expression,
    parse_literal,
    split_args,
    unquote,
)


def test_parse_literal_accepts_shell_style_objects():
    """Bare keys, single quotes and trailing commas are all accepted."""
    value = parse_literal("{status: 'active', n: 1, tags: [\"a\", \"b\",], ok: true,}")

    assert value == {"status": "active", "n": 1, "tags": ["a", "b"], "ok": True}


def test_parse_literal_keeps_operator_keys():
    pipeline = parse_literal('[{$match: {"status": "active"}}, {$group: {_id: "$status", count: {$sum: 1}}}]')

    assert pipeline == [
        {"$match": {"status": "active"}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ]


def test_parse_literal_builds_bson_constructors():
    value = parse_literal(
        '{_id: ObjectId("507f1f77bcf86cd799439011"), at: ISODate("2024-01-02T03:04:05Z"), '
        'n: NumberLong("42"), price: NumberDecimal("9.99"), nothing: null}'
    )

    assert value["_id"] == ObjectId("507f1f77bcf86cd799439011")
    assert value["at"] == datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)
    assert value["n"] == 42
    assert value["price"] == Decimal128("9.99")
    assert value["nothing"] is None


def test_parse_literal_accepts_new_and_uuid():
    value = parse_literal('{id: new UUID("12345678-1234-5678-1234-567812345678")}')

    assert isinstance(value["id"], Binary)
    assert str(value["id"].as_uuid()) == "12345678-1234-5678-1234-567812345678"


def test_parse_literal_malformed_returns_default_and_warns(capsys):
    """Malformed input never raises: the empty default comes back with a warning."""
    assert parse_literal("{status:}", {}, "filter", expected=dict) == {}

    captured = capsys.readouterr()
    assert "Could not parse filter" in captured.out


def test_parse_literal_default_is_copied():
    default = {}

    result = parse_literal("{broken", default)

    assert result == {}
    assert result is not default


def test_parse_literal_wrong_type_falls_back():
    assert parse_literal("[1, 2]", {}, "query", expected=dict) == {}
    assert parse_literal("{a: 1}", [], "pipeline", expected=list) == []


def test_parse_literal_rejects_unknown_constructor():
    assert parse_literal('{a: Frobnicate("x")}', {}, expected=dict) == {}


def test_parse_expression_builds_call_chain():
    expression = parse_expression("db.users.find({age: {$gt: 30}}).limit(5);")

    assert expression.target == "db"
    assert expression.steps == [
        Step("users"),
        Step("find", [{"age": {"$gt": 30}}], is_call=True),
        Step("limit", [5], is_call=True),
    ]


def test_parse_expression_supports_item_access_and_empty_calls():
    expression = parse_expression('db["audit-log"].countDocuments()')

    assert expression.steps == [Step("audit-log"), Step("countDocuments", [], is_call=True)]


def test_parse_expression_last_result_target():
    assert parse_expression("$").target == "$"


def test_parse_expression_invalid_raises_value_error():
    with pytest.raises(ValueError):
        parse_expression("db.users.find(")

    with pytest.raises(ValueError):
        parse_expression("SELECT * FROM users")


def test_split_args_keeps_groups_and_quotes_together():
    parts = split_args('journey {"status": "in progress"} {tags: [1, 2]} "my file.csv"')

    assert parts == ["journey", '{"status": "in progress"}', "{tags: [1, 2]}", '"my file.csv"']


def test_split_args_handles_nested_pipelines():
    parts = split_args('orders [{$match: {a: 1}}, {$limit: 5}]')

    assert parts == ["orders", "[{$match: {a: 1}}, {$limit: 5}]"]


def test_unquote():
    assert unquote('"status"') == "status"
    assert unquote("'status'") == "status"
    assert unquote("status") == "status"
    assert unquote("\"status'") == "\"status'"


def test_strings_use_json_escapes(recwarn):
    value = parse_literal(r'{path: "x\/y", tab: "a\tb", snow: "☃"}')

    assert value == {"path": "x/y", "tab": "a\tb", "snow": "☃"}
    assert not [w for w in recwarn if issubclass(w.category, DeprecationWarning)]


def test_single_quoted_strings_may_hold_double_quotes():
    value = parse_literal(r"""{msg: 'say "hi"', it: 'it\'s', odd: '\d'}""")

    assert value == {"msg": 'say "hi"', "it": "it's", "odd": "d"}
