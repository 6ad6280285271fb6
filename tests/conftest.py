"""Shared fixtures: in-memory stand-ins for the pymongo objects the service touches."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId


def _matches(doc: Dict[str, Any], filter_dict: Optional[Dict[str, Any]]) -> bool:
    for key, expected in (filter_dict or {}).items():
        value = doc.get(key)
        if isinstance(expected, dict):
            if "$in" in expected and value not in expected["$in"]:
                return False
            if "$lt" in expected and not (value is not None and value < expected["$lt"]):
                return False
        elif value != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]], fail_after: Optional[int] = None):
        self._docs = list(docs)
        self._fail_after = fail_after
        self.closed = False

    def sort(self, spec):
        for key, direction in reversed(spec):
            self._docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    def close(self):
        self.closed = True

    def __iter__(self):
        for index, doc in enumerate(self._docs):
            if self._fail_after is not None and index >= self._fail_after:
                raise RuntimeError("cursor failed")
            yield dict(doc)


class FakeCollection:
    def __init__(self, name: str, docs: Optional[List[Dict[str, Any]]] = None):
        self.name = name
        self.docs: List[Dict[str, Any]] = list(docs or [])
        self.find_calls: List[Dict[str, Any]] = []
        self.fail_after: Optional[int] = None

    def find(self, filter_dict=None, projection=None, batch_size=None):
        self.find_calls.append({"filter": filter_dict, "batch_size": batch_size})
        docs = [d for d in self.docs if _matches(d, filter_dict)]
        return FakeCursor(docs, fail_after=self.fail_after)

    def find_one(self, filter_dict=None, projection=None):
        for doc in self.docs:
            if _matches(doc, filter_dict):
                return dict(doc)
        return None

    def insert_one(self, document):
        document = dict(document)
        document.setdefault("_id", ObjectId())
        self.docs.append(document)
        return SimpleNamespace(inserted_id=document["_id"], acknowledged=True)

    def delete_many(self, filter_dict):
        keep = [d for d in self.docs if not _matches(d, filter_dict)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)

    def estimated_document_count(self):
        return len(self.docs)


class FakeDatabase:
    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None, storage_size: int = 0):
        self._collections: Dict[str, FakeCollection] = {}
        for name, docs in (collections or {}).items():
            self._collections[name] = FakeCollection(name, docs)
        self.storage_size = storage_size
        self.stats_error: Optional[Exception] = None
        self.stats_calls = 0

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def list_collection_names(self) -> List[str]:
        return list(self._collections)

    def command(self, name: str):
        assert name == "dbstats"
        self.stats_calls += 1
        if self.stats_error is not None:
            raise self.stats_error
        return {"db": "dental_clinic_test", "storageSize": self.storage_size}


@pytest.fixture(name="fake_db")
def fixture_fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture(name="clinic_db")
def fixture_clinic_db() -> FakeDatabase:
    """A database with clinical and system collections."""
    return FakeDatabase({
        "appointments": [{"_id": ObjectId(), "patient": "p1", "slot": "09:00"}],
        "labworks": [{"_id": ObjectId(), "lab": "Crown lab", "status": "pending"}],
        "patients": [{"_id": ObjectId(), "name": "Jane Roe", "age": 41}],
        "billings": [{"_id": ObjectId(), "amount": 120.5, "paid": True}],
        "users": [{"_id": ObjectId(), "email": "admin@example.com", "role": "Admin"}],
        "sessions": [{"_id": ObjectId(), "token": "abc"}],
    })
