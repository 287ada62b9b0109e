from unittest.mock import AsyncMock, MagicMock

import pytest

from dbx_shell.config import ShellSettings
from dbx_shell.interactive import main
from dbx_shell.interactive.mongo_commands import MongoCommandSet


@pytest.fixture
def backend():
    mock_backend = MagicMock()
    mock_backend.kind = "mongo"
    mock_backend.database_name = "shop"
    mock_backend.list_names = AsyncMock(return_value=["users"])
    mock_backend.count = AsyncMock(return_value=4)
    mock_backend.close = AsyncMock()
    return mock_backend


def patch_prompt(mocker, *inputs):
    prompt_session = MagicMock()
    prompt_session.prompt_async = AsyncMock(side_effect=list(inputs))
    mocker.patch.object(main, "PromptSession", return_value=prompt_session)
    return prompt_session


@pytest.mark.asyncio
async def test_repl_runs_commands_until_exit(backend, mocker, tmp_path):
    prompt_session = patch_prompt(mocker, ".count users", ".exit", "never read")
    settings = ShellSettings(history_dir=tmp_path)

    await main.run_repl(backend, MongoCommandSet(backend), settings)

    backend.count.assert_awaited_once_with("users", {})
    assert prompt_session.prompt_async.await_count == 2
    assert prompt_session.prompt_async.await_args_list[0].args == ("shop > ",)
    backend.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_repl_survives_ctrl_c_and_stops_on_eof(backend, mocker, tmp_path):
    prompt_session = patch_prompt(mocker, KeyboardInterrupt(), EOFError())

    await main.run_repl(backend, MongoCommandSet(backend), ShellSettings(history_dir=tmp_path))

    assert prompt_session.prompt_async.await_count == 2
    backend.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_repl_history_lives_in_dbx_home(backend, mocker, clean_dbx_home):
    patch_prompt(mocker, EOFError())
    file_history = mocker.patch.object(main, "FileHistory")

    await main.run_repl(backend, MongoCommandSet(backend), ShellSettings())

    file_history.assert_called_once_with(str(clean_dbx_home / ".mongo_history"))
