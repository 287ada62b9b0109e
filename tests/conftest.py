from pathlib import Path

import pytest

from dbx_shell import config


@pytest.fixture
def clean_dbx_home(tmp_path: Path, monkeypatch):
    """
    Creates a pristine, isolated ~/.dbx home for each test and redirects
    settings and history files to it.
    """
    temp_dbx_home = tmp_path / ".dbx"
    temp_dbx_home.mkdir()
    monkeypatch.setattr(config, "DBX_HOME", temp_dbx_home)
    yield temp_dbx_home
