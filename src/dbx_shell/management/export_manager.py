import csv
import io
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ..utils import resolve_path, safe_serialize

logger = structlog.get_logger(__name__)

DEFAULT_EXPORT_FILE = "export.csv"


class ExportManager:
    """Writes result sets to CSV or JSON files chosen by file extension."""

    @staticmethod
    def records_from(value: Any) -> Optional[List[Dict[str, Any]]]:
        """
        Normalises a `$` value into a list of records. A single document is
        wrapped; anything that is not a non-empty set of mappings yields None.
        """
        if isinstance(value, dict):
            return [value]
        if isinstance(value, (list, tuple)) and value and all(isinstance(v, dict) for v in value):
            return list(value)
        return None

    @staticmethod
    def _csv_field(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (dict, list, bool)):
            return json.dumps(value, default=str)
        return str(value)

    def to_csv(self, records: List[Dict[str, Any]]) -> str:
        """
        Header row from the first record's keys; every field is double-quoted
        with embedded quotes doubled; nested values become JSON text.
        """
        if not records:
            return ""
        rows = safe_serialize(records)
        headers = list(rows[0].keys())
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(headers)
        for row in rows:
            writer.writerow([self._csv_field(row.get(h)) for h in headers])
        return buffer.getvalue()

    def to_json(self, records: List[Dict[str, Any]]) -> str:
        return json.dumps(safe_serialize(records), indent=2, default=str)

    def export(self, records: List[Dict[str, Any]], filename: str) -> Tuple[Path, str]:
        """Writes `records` to `filename` (relative to the cwd). Returns (path, format)."""
        path = resolve_path(filename)
        fmt = "CSV" if path.suffix.lower() == ".csv" else "JSON"
        content = self.to_csv(records) if fmt == "CSV" else self.to_json(records)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("export.written", path=str(path), format=fmt, records=len(records))
        return path, fmt
