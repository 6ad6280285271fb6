"""CSV export of a single MongoDB collection.

Each document becomes one CSV row and every cell is text that reads back to
the stored value with :func:`restore_value`:

- str                 -> the text itself, JSON-quoted when it would
                         otherwise parse as JSON (``"120"``, ``"[1, 2]"``,
                         ``"null"``, the empty string)
- ObjectId            -> its hex string, same quoting rule
- datetime            -> ISO-8601 text (naive values are UTC, as pymongo returns them)
- None, bool, numbers,
  dict / list / other -> MongoDB Extended JSON (bson.json_util, relaxed mode),
  so ids and dates nested inside arrays keep their type on the way back

An empty cell means the document has no such field.

Documents do not have to share a schema. The header is the sorted union of
every field seen in the collection, collected during a single cursor pass
while the transformed rows are spooled to a JSON Lines file next to the
output. The spool is then replayed into the CSV, so memory use does not
grow with the collection size.
"""

from __future__ import annotations

import csv
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from bson import ObjectId, json_util
from bson.json_util import RELAXED_JSON_OPTIONS
from pymongo.collection import Collection

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
# Spreadsheet tools detect UTF-8 from the BOM
CSV_ENCODING = "utf-8-sig"


def sanitize_filename(name: str) -> str:
    """Make a collection name safe for filenames."""
    return name.replace("/", "_").replace("\\", "_").replace(" ", "_")


def csv_filenames(names: Iterable[str]) -> Dict[str, str]:
    """Map collection names to distinct CSV file names.

    Names that sanitize to the same stem get a numeric suffix so no dump
    overwrites another.
    """
    result: Dict[str, str] = {}
    taken = set()
    for name in names:
        stem = sanitize_filename(name)
        candidate = stem
        index = 2
        while candidate.lower() in taken:
            candidate = f"{stem}-{index}"
            index += 1
        if candidate != stem:
            logger.warning("Collection %r clashes with another file name, writing %s.csv", name, candidate)
        taken.add(candidate.lower())
        result[name] = f"{candidate}.csv"
    return result


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="milliseconds")


def _parses_as_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def _encode_text(text: str) -> str:
    if text == "" or _parses_as_json(text):
        return json.dumps(text, ensure_ascii=False)
    return text


def transform_value(value: Any) -> str:
    if isinstance(value, str):
        return _encode_text(value)
    if isinstance(value, ObjectId):
        return _encode_text(str(value))
    if isinstance(value, datetime):
        return _iso(value)
    return json_util.dumps(value, json_options=RELAXED_JSON_OPTIONS)


def transform_document(doc: Dict[str, Any]) -> Dict[str, str]:
    """Flatten a document into CSV cell text."""
    return {key: transform_value(value) for key, value in doc.items()}


def restore_value(text: str) -> Any:
    """Reverse :func:`transform_value` for one non-empty cell.

    Identifiers and top-level dates come back as the strings they were
    written as.
    """
    try:
        json.loads(text)
    except ValueError:
        return text
    return json_util.loads(text)


def read_csv_dump(path: Path) -> List[Dict[str, Any]]:
    """Read a dump back into documents, leaving out fields a row does not have."""
    rows = []
    with Path(path).open("r", encoding=CSV_ENCODING, newline="") as fh:
        for row in csv.DictReader(fh):
            rows.append({k: restore_value(v) for k, v in row.items() if v != ""})
    return rows


def _iter_spool(spool_path: Path) -> Iterator[Dict[str, Any]]:
    with spool_path.open("r", encoding="utf-8") as fh:
        for line in fh:
            yield json.loads(line)


def dump_collection_to_csv(
    collection: Collection,
    out_dir: Path,
    batch_size: int = DEFAULT_BATCH_SIZE,
    filename: Optional[str] = None,
) -> Optional[Path]:
    """Write every document of ``collection`` to ``<out_dir>/<name>.csv``.

    Args:
        collection: pymongo collection to export
        out_dir: existing directory for the CSV file
        batch_size: cursor batch size and progress logging interval
        filename: CSV file name, defaults to the sanitized collection name

    Returns:
        Path of the CSV file, or None when the collection is empty.

    Raises:
        PyMongoError / OSError: propagated to the caller, which owns cleanup.
    """
    name = collection.name
    out_dir = Path(out_dir)
    csv_path = out_dir / (filename or f"{sanitize_filename(name)}.csv")
    spool_path = out_dir / f".{csv_path.stem}.spool.jsonl"

    logger.info("Backing up collection %s", name)
    fields = set()
    count = 0
    try:
        with spool_path.open("w", encoding="utf-8") as spool:
            cursor = collection.find({}, batch_size=batch_size)
            try:
                for doc in cursor:
                    row = transform_document(doc)
                    fields.update(row.keys())
                    spool.write(json.dumps(row, ensure_ascii=False))
                    spool.write("\n")
                    count += 1
                    if count % batch_size == 0:
                        logger.info("%s: processed %d records...", name, count)
            finally:
                cursor.close()

        if count == 0:
            logger.info("Collection %s is empty, skipping", name)
            return None

        fieldnames = sorted(fields)
        with csv_path.open("w", encoding=CSV_ENCODING, newline="") as fh:
            writer = csv.DictWriter(fh, fieldnames=fieldnames, restval="")
            writer.writeheader()
            for row in _iter_spool(spool_path):
                writer.writerow(row)
    finally:
        spool_path.unlink(missing_ok=True)

    logger.info("%s: %d records backed up -> %s", name, count, csv_path)
    return csv_path
