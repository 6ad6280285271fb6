"""Tests for the CSV collection dumper.

The dump must keep every document and every field; ids and dates become
text, nested values become Extended JSON that reads back to the original.
"""

from __future__ import annotations

import csv
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from clinic_backup.dumper import (
    CSV_ENCODING,
    csv_filenames,
    dump_collection_to_csv,
    read_csv_dump,
    restore_value,
    transform_document,
)
from tests.conftest import FakeCollection


def test_transform_document_flattens_bson_types() -> None:
    oid = ObjectId("64b7f0c2a1b2c3d4e5f60718")
    when = datetime(2024, 3, 1, 8, 30, 0, 123000)
    row = transform_document({
        "_id": oid,
        "visit": when,
        "tags": ["crown", "molar"],
        "address": {"city": "Lyon"},
        "notes": None,
        "paid": True,
        "amount": 99.5,
    })

    assert row["_id"] == "64b7f0c2a1b2c3d4e5f60718"
    assert row["visit"] == "2024-03-01T08:30:00.123+00:00"
    assert restore_value(row["tags"]) == ["crown", "molar"]
    assert restore_value(row["address"]) == {"city": "Lyon"}
    assert row["notes"] == "null"
    assert row["paid"] == "true"
    assert row["amount"] == "99.5"
    assert all(isinstance(cell, str) for cell in row.values())


def test_dump_round_trip_keeps_every_document_and_field(tmp_path) -> None:
    first_id, second_id, third_id = ObjectId(), ObjectId(), ObjectId()
    lab_id = ObjectId()
    visit = datetime(2024, 5, 17, 14, 0, 0, tzinfo=timezone.utc)
    due = datetime(2024, 6, 1, 9, 15, 30, 500000, tzinfo=timezone.utc)
    docs = [
        {
            "_id": first_id,
            "name": "Jane Roe",
            "visit": visit,
            "treatments": [
                {"code": "D2740", "lab": lab_id, "due": due},
                {"code": "D1110", "fee": 80},
            ],
        },
        # No "treatments" and an extra "allergy" field
        {"_id": second_id, "name": "John Doe", "visit": visit, "allergy": "latex"},
        {"_id": third_id, "name": "Ana Lima", "treatments": []},
    ]
    collection = FakeCollection("patients", docs)

    csv_path = dump_collection_to_csv(collection, tmp_path)

    assert csv_path == tmp_path / "patients.csv"
    rows = read_csv_dump(csv_path)
    assert len(rows) == 3
    by_id = {row["_id"]: row for row in rows}
    assert set(by_id) == {str(first_id), str(second_id), str(third_id)}

    first = by_id[str(first_id)]
    assert first["name"] == "Jane Roe"
    assert datetime.fromisoformat(first["visit"]) == visit
    treatments = first["treatments"]
    assert treatments[0]["code"] == "D2740"
    assert treatments[0]["lab"] == lab_id
    assert treatments[0]["due"].replace(tzinfo=None) == due.replace(tzinfo=None)
    assert treatments[1] == {"code": "D1110", "fee": 80}

    second = by_id[str(second_id)]
    assert second["allergy"] == "latex"
    assert "treatments" not in second

    third = by_id[str(third_id)]
    assert third["treatments"] == []
    assert "visit" not in third


def test_dump_header_is_sorted_union_of_fields(tmp_path) -> None:
    collection = FakeCollection("billings", [
        {"_id": 1, "amount": 10},
        {"_id": 2, "status": "paid"},
    ])

    csv_path = dump_collection_to_csv(collection, tmp_path)

    with csv_path.open("r", encoding=CSV_ENCODING, newline="") as fh:
        header = next(csv.reader(fh))
    assert header == ["_id", "amount", "status"]
    raw = csv_path.read_bytes()
    assert raw.startswith(b"\xef\xbb\xbf")
    assert raw.count(b"_id,amount,status") == 1


def test_dump_empty_collection_writes_nothing(tmp_path) -> None:
    collection = FakeCollection("labworks", [])

    assert dump_collection_to_csv(collection, tmp_path) is None
    assert list(tmp_path.iterdir()) == []


def test_dump_streams_with_cursor_batches(tmp_path) -> None:
    collection = FakeCollection("appointments", [{"_id": i, "slot": i} for i in range(25)])

    csv_path = dump_collection_to_csv(collection, tmp_path, batch_size=10)

    assert collection.find_calls == [{"filter": {}, "batch_size": 10}]
    assert len(read_csv_dump(csv_path)) == 25
    # spool file is removed once the CSV is written
    assert [p.name for p in tmp_path.iterdir()] == ["appointments.csv"]


def test_dump_failure_removes_spool_and_propagates(tmp_path) -> None:
    collection = FakeCollection("patients", [{"_id": i} for i in range(5)])
    collection.fail_after = 3

    with pytest.raises(RuntimeError, match="cursor failed"):
        dump_collection_to_csv(collection, tmp_path)

    assert list(tmp_path.iterdir()) == []


def test_dump_keeps_scalar_types_apart(tmp_path) -> None:
    docs = [
        {"_id": 1, "note": "[1, 2]", "flag": "{}", "code": "120", "amount": 120},
        {"_id": 2, "note": "null", "flag": "true", "code": "True", "amount": True},
        {"_id": 3, "note": None, "flag": "", "code": '"quoted"', "amount": 12.5},
        {"_id": 4, "note": "plain text, with comma", "code": "007"},
    ]
    collection = FakeCollection("billings", docs)

    rows = read_csv_dump(dump_collection_to_csv(collection, tmp_path))

    assert rows == docs


def test_objectid_hex_that_looks_numeric_stays_a_string() -> None:
    oid = ObjectId("123456789012345678901234")

    cell = transform_document({"_id": oid})["_id"]

    assert restore_value(cell) == "123456789012345678901234"


def test_colliding_collection_names_get_distinct_files(tmp_path) -> None:
    names = ["a b", "a_b", "a/b", "patients"]

    filenames = csv_filenames(names)

    assert filenames["patients"] == "patients.csv"
    assert len(set(filenames.values())) == len(names)
    for name in names:
        dump_collection_to_csv(FakeCollection(name, [{"_id": name}]), tmp_path, filename=filenames[name])
    assert sorted(p.name for p in tmp_path.iterdir()) == sorted(filenames.values())
    restored = {read_csv_dump(tmp_path / filenames[name])[0]["_id"] for name in names}
    assert restored == set(names)
