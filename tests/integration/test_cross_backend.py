"""Cross-backend behaviour against live servers.

The same scenarios run on every backend whose URI is set:

- ``ANYBASE_TEST_MONGODB_URI``  (transactions need a replica set)
- ``ANYBASE_TEST_POSTGRES_URI``

Tests for an unset backend are skipped.
"""

from __future__ import annotations

import os
import uuid

import pytest

from anybase.core.adapters import get_adapter
from anybase.core.errors import (
    DuplicateKeyError,
    NoDocumentsError,
    TransactionFailedError,
    UnsupportedOperationError,
)
from anybase.core.ids import ID
from anybase.core.settings import DatabaseSettings
from anybase.core.types import FindOptions, Index

BACKENDS = {
    "mongodb": os.environ.get("ANYBASE_TEST_MONGODB_URI"),
    "postgres": os.environ.get("ANYBASE_TEST_POSTGRES_URI"),
}


def _connect(backend: str):
    database = get_adapter(
        DatabaseSettings(type=backend, uri=BACKENDS[backend], database="anybase_test", min_pool_size=1, max_pool_size=4)
    )
    database.connect()
    return database


@pytest.fixture(params=sorted(BACKENDS))
def db(request):
    uri = BACKENDS[request.param]
    if not uri:
        pytest.skip(f"ANYBASE_TEST_{request.param.upper()}_URI not set")
    database = _connect(request.param)
    yield database
    database.close()


@pytest.fixture
def collection_name(db):
    name = f"it_{uuid.uuid4().hex[:10]}"
    yield name
    db.drop_collection(name)


class TestDocuments:
    def test_insert_and_find(self, db, collection_name):
        products = db.collection(collection_name)
        identifier = products.insert_one({"name": "widget", "price": 9.5, "tags": ["a"]})

        assert not identifier.is_zero
        found = products.find_one({"name": "widget"})
        assert found["_id"] == identifier
        assert found["price"] == 9.5
        assert found["_version"] == 1

    def test_find_by_id_text(self, db, collection_name):
        products = db.collection(collection_name)
        identifier = products.insert_one({"name": "widget"})
        assert products.find_one({"_id": str(identifier)})["name"] == "widget"

    def test_find_options(self, db, collection_name):
        products = db.collection(collection_name)
        products.insert_many([{"n": n} for n in range(5)])
        docs = products.find(
            {"n": {"$gte": 1}}, FindOptions(sort={"n": -1}, skip=1, limit=2, projection={"n": 1, "_id": 0})
        ).all()
        assert docs == [{"n": 3}, {"n": 2}]

    def test_version_increments(self, db, collection_name):
        products = db.collection(collection_name)
        identifier = products.insert_one({"name": "widget", "stock": 1})

        products.update_one({"_id": identifier}, {"$inc": {"stock": 2}})
        products.update_one({"_id": identifier}, {"$set": {"name": "gadget"}})

        found = products.find_one({"_id": identifier})
        assert found["_version"] == 3
        assert found["stock"] == 3
        assert found["_updated_at"] > found["_created_at"]

    def test_upsert(self, db, collection_name):
        products = db.collection(collection_name)
        result = products.update_one({"sku": "W-1"}, {"$set": {"price": 10}}, upsert=True)
        assert result.upserted_count == 1
        assert isinstance(result.upserted_id, ID)
        assert products.find_one({"sku": "W-1"})["price"] == 10

    def test_delete(self, db, collection_name):
        products = db.collection(collection_name)
        products.insert_many([{"a": 1}, {"a": 1}, {"a": 2}])
        assert products.delete_many({"a": 1}).deleted_count == 2
        assert products.count_documents() == 1
        with pytest.raises(NoDocumentsError):
            products.find_one({"a": 1})

    def test_unsupported_operator_applies_nothing(self, db, collection_name):
        products = db.collection(collection_name)
        products.insert_one({"a": 1, "b": 2})
        with pytest.raises(UnsupportedOperationError):
            products.update_many({}, {"$set": {"a": 5}, "$rename": {"b": "c"}})
        found = products.find_one()
        assert found["a"] == 1
        assert found["_version"] == 1

    def test_updated_at_strictly_increases(self, db, collection_name):
        coll = db.collection(collection_name)
        identifier = coll.insert_one({"n": 0})
        stamps = [coll.find_one({"_id": identifier})["_updated_at"]]
        for n in range(1, 25):
            coll.update_one({"_id": identifier}, {"$set": {"n": n}})
            stamps.append(coll.find_one({"_id": identifier})["_updated_at"])
        assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))

    def test_payload_id_reads_back_as_text(self, db, collection_name):
        coll = db.collection(collection_name)
        owner = ID.new(db.type)
        coll.insert_one({"owner_id": owner, "refs": [owner]})

        found = coll.find_one({"owner_id": owner})
        assert found["owner_id"] == str(owner)
        assert found["refs"] == [str(owner)]


class TestIndexes:
    def test_create_and_list(self, db, collection_name):
        coll = db.collection(collection_name)
        coll.insert_one({"email": "a@example.com"})

        assert coll.create_index(Index(keys={"email": 1}, unique=True)) == "email_1"

        indexes = {index.name: index for index in coll.list_indexes()}
        assert indexes["email_1"].keys == {"email": 1}
        assert indexes["email_1"].unique is True

        coll.drop_index("email_1")
        assert "email_1" not in {index.name for index in coll.list_indexes()}

    def test_email_unique_round_trips(self, db, collection_name):
        coll = db.collection(collection_name)
        assert coll.create_index(Index(name="email_unique", keys={"email": 1}, unique=True)) == "email_unique"

        listed = {index.name: index for index in coll.list_indexes()}["email_unique"]
        assert listed.keys == {"email": 1}
        assert listed.unique is True

    def test_duplicate_key(self, db, collection_name):
        coll = db.collection(collection_name)
        coll.create_index(Index(keys={"email": 1}, unique=True))
        coll.insert_one({"email": "a@example.com"})
        with pytest.raises(DuplicateKeyError):
            coll.insert_one({"email": "a@example.com"})


class TestTransactions:
    def _begin(self, db):
        try:
            return db.begin_transaction()
        except TransactionFailedError as exc:
            pytest.skip(f"transactions unavailable: {exc.message}")

    def test_commit(self, db, collection_name):
        db.create_collection(collection_name)
        with self._begin(db) as tx:
            tx.collection(collection_name).insert_one({"n": 1})
            tx.collection(collection_name).insert_one({"n": 2})
        assert db.collection(collection_name).count_documents() == 2

    def test_rollback_on_base_exception(self, db, collection_name):
        db.create_collection(collection_name)
        self._begin(db).rollback()

        def interrupted(tx):
            tx.collection(collection_name).insert_one({"n": 1})
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            db.run_in_transaction(interrupted)
        assert db.collection(collection_name).count_documents() == 0

    def test_callback_error_rolls_back(self, db, collection_name):
        db.create_collection(collection_name)
        self._begin(db).rollback()

        def failing(tx):
            tx.collection(collection_name).insert_one({"n": 1})
            tx.collection(collection_name).insert_one({"n": 2})
            raise ValueError("checkout failed")

        with pytest.raises(ValueError, match="checkout failed"):
            db.run_in_transaction(failing)
        assert db.collection(collection_name).count_documents() == 0


@pytest.fixture
def products(db):
    db.drop_collection("products")
    yield db.collection("products")
    db.drop_collection("products")


def test_widget_scenario(products):
    products.insert_one({"name": "widget", "price": 9.99})
    found = products.find_one({"name": "widget"})
    assert found["_version"] == 1
    assert not found["_id"].is_zero

    result = products.update_one({"name": "widget"}, {"$set": {"price": 12.5}})
    assert result.matched_count == 1

    found = products.find_one({"name": "widget"})
    assert found["price"] == 12.5
    assert found["_version"] == 2


CATALOG = [
    {"n": 1, "status": "active", "items": [{"sku": "A", "qty": 1}, {"sku": "B", "qty": 5}], "tags": ["x"]},
    {"n": 2, "status": "pending", "items": [{"sku": "C", "qty": 3}]},
    {"n": 3, "status": "archived", "items": [], "tags": ["x", "y"]},
    {"n": 4, "status": "active", "address": {"city": "Paris"}},
    {"n": 5, "status": None, "items": [{"sku": "A", "qty": 9}]},
]

FILTERS = [
    ({"status": {"$in": ["active", "pending"]}}, {1, 2, 4}),
    ({"status": None}, {5}),
    ({"tags": "x"}, {1, 3}),
    ({"address.city": "Paris"}, {4}),
    ({"items.sku": "A"}, {1, 5}),
    ({"items.sku": {"$ne": "A"}}, {2, 3, 4}),
    ({"items.sku": {"$in": ["B", "C"]}}, {1, 2}),
    ({"items.qty": {"$gte": 4}}, {1, 5}),
    ({"items.sku": {"$exists": True}}, {1, 2, 5}),
    ({"items.sku": {"$regex": "^c", "$options": "i"}}, {2}),
    ({"$or": [{"items.qty": {"$lt": 2}}, {"address.city": "Paris"}]}, {1, 4}),
]


def _load_catalog(database, name):
    coll = database.collection(name)
    # same primary keys on every backend so result sets compare by _id
    coll.insert_many([{**doc, "_id": _catalog_id(doc["n"])} for doc in CATALOG])
    return coll


def _catalog_id(n: int) -> ID:
    return ID.from_native(uuid.UUID(int=n))


class TestFilterEquivalence:
    @pytest.mark.parametrize("filter,expected", FILTERS)
    def test_matches_document_store_semantics(self, db, collection_name, filter, expected):
        coll = _load_catalog(db, collection_name)
        assert {doc["n"] for doc in coll.find(filter).all()} == expected
        assert coll.count_documents(filter) == len(expected)

    def test_same_ids_on_both_backends(self):
        missing = [name for name, uri in BACKENDS.items() if not uri]
        if missing:
            pytest.skip(f"needs every backend URI, missing {missing}")
        databases = [_connect(name) for name in sorted(BACKENDS)]
        name = f"it_{uuid.uuid4().hex[:10]}"
        try:
            colls = [_load_catalog(database, name) for database in databases]
            for filter, _ in FILTERS:
                mongo_ids, postgres_ids = ({str(doc["_id"]) for doc in coll.find(filter).all()} for coll in colls)
                assert mongo_ids == postgres_ids, filter
        finally:
            for database in databases:
                database.drop_collection(name)
                database.close()
