import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from dbx_shell.interactive.commands import TitledResult
from dbx_shell.interactive.executor import CommandExecutor
from dbx_shell.interactive.literals import MongoExpression
from dbx_shell.interactive.mongo_commands import MongoCommandSet
from dbx_shell.interactive.session import SessionState


@pytest.fixture
def backend():
    """A stand-in for MongoBackend; every driver call is an AsyncMock."""
    mock_backend = MagicMock()
    mock_backend.kind = "mongo"
    for name in (
        "use",
        "list_databases",
        "list_names",
        "find",
        "find_one",
        "count",
        "distinct",
        "aggregate",
        "indexes",
        "db_stats",
        "collection_stats",
        "top",
        "evaluate",
    ):
        setattr(mock_backend, name, AsyncMock())
    mock_backend.list_names.return_value = []
    return mock_backend


@pytest.fixture
def executor(backend):
    state = SessionState("mongo", database_name="test")
    command_set = MongoCommandSet(backend)
    return CommandExecutor(state, command_set, output_handler=AsyncMock())


@pytest.mark.asyncio
async def test_dot_command_routes_to_one_handler(executor: CommandExecutor, backend, mocker):
    """A recognised dot-command never falls through to expression evaluation."""
    evaluate = mocker.patch.object(executor.command_set, "evaluate", new=AsyncMock())
    backend.count.return_value = 3

    await executor.execute(".count users")

    backend.count.assert_awaited_once_with("users", {})
    evaluate.assert_not_awaited()


@pytest.mark.asyncio
async def test_count_with_zero_matches_is_a_normal_result(executor: CommandExecutor, backend):
    backend.count.return_value = 0

    await executor.execute('.count users {status: "archived"}')

    backend.count.assert_awaited_once_with("users", {"status": "archived"})
    executor.output_handler.handle_result.assert_awaited_once_with(
        TitledResult(0, title='📊 Count for "users":'), executor.state
    )
    executor.output_handler.handle_error.assert_not_awaited()
    assert executor.state.last_result == 0


@pytest.mark.asyncio
async def test_malformed_filter_degrades_to_empty_query(executor: CommandExecutor, backend):
    backend.count.return_value = 10

    await executor.execute(".count users {status:}")

    backend.count.assert_awaited_once_with("users", {})
    executor.output_handler.handle_error.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_command_reports_and_continues(executor: CommandExecutor):
    await executor.execute(".bogus something")

    executor.output_handler.handle_error.assert_awaited_once_with(
        "ValueError: Unknown command '.bogus'. Type .help for the list of commands."
    )
    assert executor.state.is_running is True


@pytest.mark.asyncio
async def test_empty_input_is_a_no_op(executor: CommandExecutor):
    assert await executor.execute("   ") is None

    executor.output_handler.handle_result.assert_not_awaited()
    executor.output_handler.handle_error.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_arguments_print_usage(executor: CommandExecutor, backend):
    await executor.execute(".count")

    executor.output_handler.handle_error.assert_awaited_once_with(
        ".count <collection> [<queryJSON>]", usage=True
    )
    backend.count.assert_not_awaited()


@pytest.mark.asyncio
async def test_pretty_twice_restores_mode(executor: CommandExecutor):
    original = executor.state.pretty

    await executor.execute(".pretty")
    assert executor.state.pretty is not original

    await executor.execute(".pretty")
    assert executor.state.pretty is original


@pytest.mark.asyncio
async def test_messages_do_not_replace_last_result(executor: CommandExecutor):
    executor.state.last_result = [{"a": 1}]

    await executor.execute(".pretty")

    assert executor.state.last_result == [{"a": 1}]


@pytest.mark.asyncio
async def test_use_switches_database_and_rebuilds_aliases(executor: CommandExecutor, backend):
    backend.list_names.return_value = ["audit-log", "users"]

    await executor.execute(".use shop")

    backend.use.assert_awaited_once_with("shop")
    assert executor.state.database_name == "shop"
    assert executor.state.prompt == "shop > "
    assert executor.state.aliases == {"audit_log": "audit-log", "users": "users"}


@pytest.mark.asyncio
async def test_alias_resolves_after_use(executor: CommandExecutor, backend):
    backend.list_names.return_value = ["audit-log"]
    backend.count.return_value = 2
    await executor.execute(".use shop")

    await executor.execute(".count audit_log")

    backend.count.assert_awaited_once_with("audit-log", {})


@pytest.mark.asyncio
async def test_expression_is_parsed_and_evaluated(executor: CommandExecutor, backend):
    backend.evaluate.return_value = [{"name": "ada"}]

    await executor.execute("db.users.find({name: 'ada'})")

    expression, state = backend.evaluate.await_args.args
    assert isinstance(expression, MongoExpression)
    assert expression.target == "db"
    assert state is executor.state
    assert executor.state.last_result == [{"name": "ada"}]


@pytest.mark.asyncio
async def test_expression_failure_is_reported(executor: CommandExecutor, backend):
    backend.evaluate.side_effect = ValueError("users.mapReduce is not a supported method.")

    await executor.execute("db.users.mapReduce()")

    executor.output_handler.handle_error.assert_awaited_once_with(
        "ValueError: users.mapReduce is not a supported method."
    )
    assert executor.state.is_running is True


@pytest.mark.asyncio
async def test_table_without_result_is_a_usage_error(executor: CommandExecutor):
    await executor.execute(".table")

    executor.output_handler.handle_error.assert_awaited_once_with(".table No Results", usage=True)


@pytest.mark.asyncio
async def test_table_renders_last_result(executor: CommandExecutor):
    rows = [{"a": 1}]
    executor.state.last_result = rows

    await executor.execute(".table")

    executor.output_handler.handle_result.assert_awaited_once_with(
        TitledResult(rows, output_mode="table"), executor.state
    )
    assert executor.state.last_result is rows


@pytest.mark.asyncio
@pytest.mark.parametrize("command", [".exit", ".quit"])
async def test_exit_stops_the_loop(executor: CommandExecutor, command):
    await executor.execute(command)

    assert executor.state.is_running is False


@pytest.mark.asyncio
async def test_distinct_passes_field_and_query(executor: CommandExecutor, backend):
    backend.distinct.return_value = ["active", "done"]

    await executor.execute('.distinct journey "status" {type: "x"}')

    backend.distinct.assert_awaited_once_with("journey", "status", {"type": "x"})
    assert executor.state.last_result == ["active", "done"]


@pytest.mark.asyncio
async def test_aggregate_stores_result(executor: CommandExecutor, backend):
    backend.aggregate.return_value = [{"_id": "active", "count": 2}]

    await executor.execute('.aggregate journey [{$group: {_id: "$status", count: {$sum: 1}}}]')

    backend.aggregate.assert_awaited_once_with(
        "journey", [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
    )
    assert executor.state.last_result == [{"_id": "active", "count": 2}]


@pytest.mark.asyncio
async def test_find_one_without_match(executor: CommandExecutor, backend):
    backend.find_one.return_value = None

    await executor.execute(".findOne users {name: 'nobody'}")

    executor.output_handler.handle_result.assert_awaited_once_with(
        "No document found", executor.state
    )


@pytest.mark.asyncio
async def test_export_with_filter_and_filename(executor: CommandExecutor, backend, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    backend.find.return_value = [{"_id": 1, "status": "active"}]

    await executor.execute('.export journey {"status":"active"} {} active_data.csv')

    backend.find.assert_awaited_once_with("journey", {"status": "active"}, {})
    content = (tmp_path / "active_data.csv").read_text()
    assert content.splitlines()[0] == '"_id","status"'


@pytest.mark.asyncio
async def test_export_filename_in_projection_slot(executor: CommandExecutor, backend, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    backend.find.return_value = [{"_id": 1}]

    await executor.execute(".export journey {} out.csv")

    assert (tmp_path / "out.csv").exists()


@pytest.mark.asyncio
async def test_export_defaults_to_collection_json(executor: CommandExecutor, backend, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    backend.find.return_value = [{"_id": 1, "name": "ada"}]

    await executor.execute(".export users")

    backend.find.assert_awaited_once_with("users", {}, {})
    assert json.loads((tmp_path / "users.json").read_text()) == [{"_id": 1, "name": "ada"}]


@pytest.mark.asyncio
async def test_export_without_collection_uses_last_result(executor: CommandExecutor, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    executor.state.last_result = [{"a": 1}, {"a": 2}]

    await executor.execute(".export")

    assert (tmp_path / "export.csv").read_text() == '"a"\n"1"\n"2"\n'


@pytest.mark.asyncio
async def test_export_without_result(executor: CommandExecutor):
    await executor.execute(".export")

    executor.output_handler.handle_result.assert_awaited_once_with(
        "⚠️  No result to export", executor.state
    )


@pytest.mark.asyncio
async def test_collections_rebuilds_aliases(executor: CommandExecutor, backend):
    backend.list_names.return_value = ["my logs", "users"]

    await executor.execute(".collections")

    assert executor.state.aliases == {"my_logs": "my logs", "users": "users"}
    assert executor.state.last_result == ["my logs", "users"]


@pytest.mark.asyncio
@pytest.mark.parametrize("line,name", [(".", "."), (".5", ".5"), (".count;", ".count;")])
async def test_any_dot_line_is_a_command(executor: CommandExecutor, backend, line, name):
    await executor.execute(line)

    executor.output_handler.handle_error.assert_awaited_once_with(
        f"ValueError: Unknown command '{name}'. Type .help for the list of commands."
    )
    backend.evaluate.assert_not_awaited()
