"""Tests for the Mongo repositories (query building and error mapping)"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from civicflow.domain.enums import ComplaintStatus, ComplaintType
from civicflow.domain.errors import DuplicateSubmissionError, PersistenceError, StaleSnapshotError
from civicflow.domain.models import ComplaintFilter
from civicflow.engine.state_machine import ComplaintStateMachine
from civicflow.repositories import async_mongo
from civicflow.repositories.complaint_repo import ComplaintRepository, build_complaint_query
from civicflow.repositories.submission_key_repo import SubmissionKeyRepository
from tests.conftest import make_classification, make_location


class _ReplaceResult:
    def __init__(self, modified_count):
        self.modified_count = modified_count


class FakeCollection:
    """Just enough of a Motor collection for the repositories under test"""

    def __init__(self, error=None):
        self.docs = {}
        self.error = error
        self.replace_calls = []

    async def replace_one(self, query, doc, upsert=False):
        self.replace_calls.append((query, upsert))
        if self.error is not None:
            raise self.error
        existing = self.docs.get(query["_id"])
        if existing is not None and "claimed_at" in query:
            if existing["claimed_at"] < query["claimed_at"]["$lt"]:
                self.docs[query["_id"]] = doc
                return _ReplaceResult(1)
            return _ReplaceResult(0)
        self.docs[query["_id"]] = doc
        return _ReplaceResult(1)

    async def insert_one(self, doc):
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("duplicate _id")
        self.docs[doc["_id"]] = doc

    async def find_one(self, query):
        doc = self.docs.get(query.get("_id") or query.get("local_id"))
        return dict(doc) if doc else None


def _complaint():
    return ComplaintStateMachine().create(
        complaint_id="CMP-1",
        classification=make_classification(),
        location=make_location(),
        photo_ref="photos/1.jpg",
    )


class TestBuildComplaintQuery:

    def test_empty_filter_matches_everything(self):
        assert build_complaint_query(ComplaintFilter()) == {}

    def test_single_condition(self):
        query = build_complaint_query(ComplaintFilter(status=ComplaintStatus.ASSIGNED))
        assert query == {"status": "ASSIGNED"}

    def test_conditions_are_conjunctive(self):
        date_from = datetime(2024, 5, 1, tzinfo=timezone.utc)
        date_to = date_from + timedelta(days=7)

        query = build_complaint_query(ComplaintFilter(
            complaint_type=ComplaintType.POTHOLE,
            department_id="roads",
            date_from=date_from,
            date_to=date_to,
        ))

        assert query == {"$and": [
            {"complaint_type": "pothole"},
            {"routing.department_id": "roads"},
            {"created_at": {"$gte": date_from, "$lte": date_to}},
        ]}

    def test_inverted_range_is_rejected(self):
        with pytest.raises(ValueError):
            ComplaintFilter(
                date_from=datetime(2024, 5, 2, tzinfo=timezone.utc),
                date_to=datetime(2024, 5, 1, tzinfo=timezone.utc),
            )


class TestComplaintRepository:

    def test_save_is_versioned_upsert(self):
        collection = FakeCollection()
        repo = ComplaintRepository(collection)

        asyncio.run(repo.save(_complaint()))

        query, upsert = collection.replace_calls[0]
        assert query == {"_id": "CMP-1", "version": {"$lt": 1}}
        assert upsert is True
        assert collection.docs["CMP-1"]["_id"] == "CMP-1"

    def test_newer_stored_version_is_stale(self):
        repo = ComplaintRepository(FakeCollection(error=DuplicateKeyError("dup")))
        with pytest.raises(StaleSnapshotError):
            asyncio.run(repo.save(_complaint()))

    def test_driver_failure_is_persistence_error(self):
        repo = ComplaintRepository(FakeCollection(error=ServerSelectionTimeoutError("no primary")))
        with pytest.raises(PersistenceError):
            asyncio.run(repo.save(_complaint()))

    def test_get_round_trips_document(self):
        collection = FakeCollection()
        repo = ComplaintRepository(collection)
        complaint = _complaint()

        asyncio.run(repo.save(complaint))
        loaded = asyncio.run(repo.get("CMP-1"))

        assert loaded == complaint


class TestSubmissionKeyRepository:

    def test_second_claim_inside_window_is_duplicate(self):
        repo = SubmissionKeyRepository(FakeCollection())
        since = datetime.now(timezone.utc) - timedelta(hours=24)

        asyncio.run(repo.claim("draft-1", "CMP-1", since))
        with pytest.raises(DuplicateSubmissionError) as exc:
            asyncio.run(repo.claim("draft-1", "CMP-2", since))

        assert exc.value.original_complaint_id == "CMP-1"

    def test_expired_claim_is_taken_over(self):
        collection = FakeCollection()
        repo = SubmissionKeyRepository(collection)
        collection.docs["draft-1"] = {
            "_id": "draft-1",
            "local_id": "draft-1",
            "complaint_id": "CMP-old",
            "claimed_at": datetime.now(timezone.utc) - timedelta(hours=30),
        }
        since = datetime.now(timezone.utc) - timedelta(hours=24)

        key = asyncio.run(repo.claim("draft-1", "CMP-new", since))

        assert key.complaint_id == "CMP-new"
        assert collection.docs["draft-1"]["complaint_id"] == "CMP-new"


class FakeDatabase:
    def __init__(self, collections=(), error=None):
        self.collections = list(collections)
        self.error = error

    async def command(self, name):
        if self.error is not None:
            raise self.error
        return {"ok": 1}

    async def list_collection_names(self):
        return self.collections


class TestAsyncHealthCheck:

    def test_reports_missing_store_collections(self, monkeypatch):
        monkeypatch.setattr(async_mongo, "_async_database", FakeDatabase(["complaints", "audit_events"]))

        health = asyncio.run(async_mongo.async_health_check())

        assert health == {"status": "healthy", "missing_collections": ["submission_keys"]}

    def test_unreachable_server_is_unhealthy(self, monkeypatch):
        monkeypatch.setattr(
            async_mongo, "_async_database", FakeDatabase(error=ServerSelectionTimeoutError("no servers"))
        )

        health = asyncio.run(async_mongo.async_health_check())

        assert health["status"] == "unhealthy"
        assert "no servers" in health["error"]
