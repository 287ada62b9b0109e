import base64
import datetime
import decimal
import sys
import uuid
from pathlib import Path
from typing import Any

from bson import Binary, Decimal128, ObjectId, Timestamp


def get_pkg_root() -> Path:
    """
    Gets the root directory of the dbx_shell package. This works correctly
    whether running from source or as a frozen PyInstaller executable.
    """
    if getattr(sys, "frozen", False):
        return Path(sys._MEIPASS) / "dbx_shell"
    else:
        return Path(__file__).parent


def resolve_path(path_str: str) -> Path:
    """
    Expands a user-supplied path into an absolute path.
    - `~` is expanded to the user's home directory.
    - Relative paths are resolved against the current working directory.
    """
    return Path(path_str).expanduser().resolve()


def safe_serialize(value: Any, shell_style: bool = False) -> Any:
    """
    Recursively converts driver values (BSON types, datetimes, decimals, bytes)
    into JSON-compatible primitives.

    With `shell_style=True`, ObjectIds are rendered the way the mongo shell
    prints them (`ObjectId("...")`) instead of as a bare hex string.
    """
    if isinstance(value, dict):
        return {str(k): safe_serialize(v, shell_style) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [safe_serialize(v, shell_style) for v in value]
    if isinstance(value, ObjectId):
        return f'ObjectId("{value}")' if shell_style else str(value)
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return str(value)
    if isinstance(value, (Decimal128, decimal.Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, Binary) and value.subtype == 4:
        return str(value.as_uuid())
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Timestamp):
        return {"t": value.time, "i": value.inc}
    return value
