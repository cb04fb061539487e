import unittest
from unittest.mock import patch

import mongomock
from pydantic import ValidationError
from pymongo.errors import AutoReconnect, ServerSelectionTimeoutError

from database import (
    ConnectionManager,
    DuplicateEmailError,
    InMemoryStore,
    MongoStore,
    connect_store,
    public_user,
)
from schemas import Proposal, User, WaterUsage


def make_user(email="farmer@example.com", role="farmer"):
    return User(name="Asha", email=email, password="hashed", role=role, location="Pune")


class StoreContractMixin:
    """Behaviour both stores must share."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_insert_user_assigns_matching_ids(self):
        user = self.store.insert_user(make_user())
        self.assertIsInstance(user["id"], str)
        self.assertEqual(user["id"], user["_id"])
        self.assertEqual(self.store.get_user(user["id"])["email"], "farmer@example.com")
        self.assertEqual(self.store.find_user_by_email("farmer@example.com")["id"], user["id"])

    def test_duplicate_email_rejected(self):
        self.store.insert_user(make_user())
        with self.assertRaises(DuplicateEmailError):
            self.store.insert_user(make_user())
        self.assertEqual(len(self.store.find_users()), 1)

    def test_email_lookup_is_case_sensitive(self):
        self.store.insert_user(make_user())
        self.assertIsNone(self.store.find_user_by_email("Farmer@example.com"))

    def test_unknown_ids(self):
        self.assertIsNone(self.store.get_user("nope"))
        self.assertIsNone(self.store.get_proposal("nope"))
        self.assertFalse(self.store.delete_proposal("nope"))

    def test_proposals_active_only_newest_first_with_proposer(self):
        owner = self.store.insert_user(make_user(email="p@example.com", role="provider"))
        first = self.store.insert_proposal(Proposal(title="Pump", price=10, proposer=owner["id"]))
        second = self.store.insert_proposal(Proposal(title="Drip Kit", price=500, proposer=owner["id"]))
        self.store.insert_proposal(Proposal(title="Old", price=1, proposer=owner["id"], status="cancelled"))

        listed = self.store.find_proposals()
        self.assertEqual([p["id"] for p in listed], [second["id"], first["id"]])
        proposer = listed[0]["proposer"]
        self.assertEqual(proposer["id"], owner["id"])
        self.assertEqual(proposer["name"], "Asha")
        self.assertEqual(proposer["email"], "p@example.com")
        self.assertNotIn("password", proposer)

    def test_delete_proposal(self):
        owner = self.store.insert_user(make_user())
        created = self.store.insert_proposal(Proposal(title="Pump", price=10, proposer=owner["id"]))
        self.assertEqual(self.store.get_proposal(created["id"])["title"], "Pump")
        self.assertTrue(self.store.delete_proposal(created["id"]))
        self.assertIsNone(self.store.get_proposal(created["id"]))
        self.assertEqual(self.store.find_proposals(), [])

    def test_water_usage_newest_first(self):
        before = len(self.store.find_water_usage())
        a = self.store.insert_water_usage(WaterUsage(field="North", litersUsed=100))
        b = self.store.insert_water_usage(WaterUsage(field="South", litersUsed=200, status="High"))
        records = self.store.find_water_usage()
        self.assertEqual(len(records), before + 2)
        self.assertEqual([r["id"] for r in records[:2]], [b["id"], a["id"]])
        self.assertEqual(records[1]["status"], "Optimal")


class InMemoryStoreTests(StoreContractMixin, unittest.TestCase):
    def make_store(self):
        return InMemoryStore()

    def test_seeded_water_usage(self):
        records = self.store.find_water_usage()
        self.assertEqual(
            sorted((r["field"], r["litersUsed"], r["status"]) for r in records),
            [("Corn Field", 900, "Low"), ("Rice Field", 1800, "High"), ("Wheat Field", 1200, "Optimal")],
        )

    def test_ids_unique_within_same_millisecond(self):
        with patch("database.time.time", return_value=1700000000.0):
            ids = [self.store.insert_user(make_user(email=f"u{i}@example.com"))["id"] for i in range(3)]
        self.assertEqual(len(set(ids)), 3)

    def test_returned_records_are_copies(self):
        user = self.store.insert_user(make_user())
        user["name"] = "changed"
        self.store.find_users()[0]["email"] = "changed"
        self.assertEqual(self.store.get_user(user["id"])["name"], "Asha")
        self.assertEqual(self.store.find_users()[0]["email"], "farmer@example.com")

    def test_reset_restores_seed(self):
        self.store.insert_user(make_user())
        self.store.insert_water_usage(WaterUsage(field="North", litersUsed=1))
        self.store.reset()
        self.assertEqual(self.store.find_users(), [])
        self.assertEqual(len(self.store.find_water_usage()), 3)

    def test_isolated_instances(self):
        self.store.insert_user(make_user())
        self.assertEqual(InMemoryStore().find_users(), [])


class MongoStoreTests(StoreContractMixin, unittest.TestCase):
    def make_store(self):
        return MongoStore(mongomock.MongoClient()["smart-irrigation"])

    def test_starts_empty(self):
        self.assertEqual(self.store.find_water_usage(), [])
        self.assertTrue(self.store.connected)

    def test_timestamps_are_utc_aware(self):
        self.store.insert_water_usage(WaterUsage(field="North", litersUsed=1))
        record = self.store.find_water_usage()[0]
        self.assertIsNotNone(record["createdAt"].tzinfo)


class NumberFieldTests(unittest.TestCase):
    def test_integers_keep_their_type(self):
        usage = WaterUsage(field="North", litersUsed=1200)
        self.assertIsInstance(usage.litersUsed, int)
        proposal = Proposal(title="Pump", price=500, proposer="1")
        self.assertIsInstance(proposal.price, int)
        self.assertEqual(Proposal(title="Pump", price=12.5, proposer="1").price, 12.5)

    def test_non_finite_numbers_rejected(self):
        for bad in (float("nan"), float("inf"), float("-inf")):
            with self.assertRaises(ValidationError):
                WaterUsage(field="North", litersUsed=bad)
            with self.assertRaises(ValidationError):
                Proposal(title="Pump", price=bad, proposer="1")

    def test_negative_price_rejected(self):
        with self.assertRaises(ValidationError):
            Proposal(title="Pump", price=-1, proposer="1")


class PublicUserTests(unittest.TestCase):
    def test_strips_password(self):
        self.assertEqual(public_user({"id": "1", "password": "x", "name": "A"}), {"id": "1", "name": "A"})


class ConnectionManagerTests(unittest.TestCase):
    @patch("database.MongoClient")
    def test_failed_connect_is_permanent(self, mock_client):
        mock_client.return_value.admin.command.side_effect = ServerSelectionTimeoutError("down")
        manager = ConnectionManager("mongodb://nowhere:27017/test", timeout_ms=10)
        self.assertFalse(manager.connect())
        self.assertFalse(manager.is_available())
        self.assertFalse(manager.connect())
        self.assertEqual(mock_client.call_count, 1)
        mock_client.return_value.close.assert_called_once()
        self.assertIsNone(manager.client)
        with self.assertRaises(RuntimeError):
            manager.database

    @patch("database.MongoClient")
    def test_successful_connect(self, mock_client):
        manager = ConnectionManager("mongodb://localhost:27017/test", timeout_ms=10)
        self.assertTrue(manager.connect())
        self.assertTrue(manager.is_available())
        mock_client.assert_called_once_with("mongodb://localhost:27017/test", serverSelectionTimeoutMS=10)
        mock_client.return_value.admin.command.assert_called_once_with("ping")
        self.assertIs(manager.database, mock_client.return_value.get_default_database.return_value)

    @patch("database.MongoClient")
    def test_connect_store_falls_back(self, mock_client):
        mock_client.return_value.admin.command.side_effect = ServerSelectionTimeoutError("down")
        store = connect_store("mongodb://nowhere:27017/test", use_in_memory=False)
        self.assertIsInstance(store, InMemoryStore)
        self.assertFalse(store.connected)

    @patch("database.MongoClient")
    def test_connect_store_uses_mongo_when_available(self, mock_client):
        store = connect_store("mongodb://localhost:27017/test", use_in_memory=False)
        self.assertIsInstance(store, MongoStore)

    @patch("database.MongoClient")
    def test_connect_store_falls_back_when_setup_fails(self, mock_client):
        db = mock_client.return_value.get_default_database.return_value
        db.__getitem__.return_value.create_index.side_effect = AutoReconnect("gone")
        store = connect_store("mongodb://localhost:27017/test", use_in_memory=False)
        self.assertIsInstance(store, InMemoryStore)
        mock_client.return_value.close.assert_called_once()

    @patch("database.MongoClient")
    def test_connect_store_in_memory_toggle(self, mock_client):
        store = connect_store("mongodb://localhost:27017/test", use_in_memory=True)
        self.assertIsInstance(store, InMemoryStore)
        mock_client.assert_not_called()


if __name__ == "__main__":
    unittest.main()
