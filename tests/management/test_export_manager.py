import csv
import io
import json

from bson import ObjectId

from dbx_shell.management.export_manager import ExportManager


def test_csv_reparses_to_same_headers_and_row_count():
    records = [
        {"_id": ObjectId("507f1f77bcf86cd799439011"), "name": "ada", "tags": ["x", "y"]},
        {"_id": ObjectId("507f1f77bcf86cd799439012"), "name": 'say "hi"', "tags": None},
        {"_id": ObjectId("507f1f77bcf86cd799439013"), "name": "alan", "meta": {"a": 1}},
    ]

    rows = list(csv.reader(io.StringIO(ExportManager().to_csv(records))))

    assert rows[0] == ["_id", "name", "tags"]
    assert len(rows) == 1 + len(records)
    assert rows[1] == ["507f1f77bcf86cd799439011", "ada", '["x", "y"]']
    assert rows[2] == ["507f1f77bcf86cd799439012", 'say "hi"', ""]


def test_csv_quotes_every_field():
    text = ExportManager().to_csv([{"a": 'he said "hi"', "b": True, "c": 1.5}])

    assert text == '"a","b","c"\n"he said ""hi""","true","1.5"\n'


def test_csv_of_nothing_is_empty():
    assert ExportManager().to_csv([]) == ""


def test_export_picks_format_from_extension(tmp_path):
    manager = ExportManager()
    records = [{"_id": ObjectId("507f1f77bcf86cd799439011"), "n": 1}]

    json_path, json_format = manager.export(records, str(tmp_path / "out.json"))
    csv_path, csv_format = manager.export(records, str(tmp_path / "nested" / "out.CSV"))

    assert json_format == "JSON"
    assert json.loads(json_path.read_text()) == [{"_id": "507f1f77bcf86cd799439011", "n": 1}]
    assert csv_format == "CSV"
    assert csv_path.read_text().startswith('"_id","n"\n')


def test_export_without_extension_writes_json(tmp_path):
    path, fmt = ExportManager().export([{"a": 1}], str(tmp_path / "dump"))

    assert fmt == "JSON"
    assert json.loads(path.read_text()) == [{"a": 1}]


def test_records_from_normalises_last_result():
    assert ExportManager.records_from({"a": 1}) == [{"a": 1}]
    assert ExportManager.records_from([{"a": 1}]) == [{"a": 1}]
    assert ExportManager.records_from([]) is None
    assert ExportManager.records_from(None) is None
    assert ExportManager.records_from(42) is None
    assert ExportManager.records_from(["a", "b"]) is None
