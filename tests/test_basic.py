# tests/test_basic.py

import os
import unittest
from unittest import mock

from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from apitest import ApiTestCase

from database import connect_store
from main import app


class BasicTests(ApiTestCase):

    def test_main_page(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn("running", response.json()["message"])

    def test_invalid_route(self):
        response = self.client.get("/something")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"message": "Not Found"})

    def test_health_reports_memory_backend(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["backend"], "memory")
        self.assertFalse(body["fallbackMode"])

    def test_health_in_fallback_mode(self):
        self.store.fallback = True
        body = self.client.get("/api/health").json()
        self.assertEqual(body["database"], "disconnected")
        self.assertTrue(body["fallbackMode"])

    def test_schema(self):
        body = self.client.get("/schema").json()
        self.assertEqual(set(body), {"user", "ewaste", "campaign"})
        self.assertIn("greenScore", body["user"]["properties"])


class ErrorHandlerTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.token, _ = self.register("alice")
        self.client = TestClient(app, raise_server_exceptions=False)

    def test_lost_database_connection(self):
        with mock.patch.object(self.store, "find", side_effect=ServerSelectionTimeoutError("no servers")):
            response = self.client.get("/api/ewaste", headers=self.auth(self.token))
        self.assertEqual(response.status_code, 503)
        body = response.json()
        self.assertEqual(body["error"], "Database unavailable")
        self.assertIn("Database connection error", body["message"])

    def test_unexpected_error_body(self):
        with mock.patch.object(self.store, "find", side_effect=RuntimeError("secret")):
            response = self.client.get("/api/ewaste", headers=self.auth(self.token))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"message": "Something went wrong!"})
        self.assertNotIn("secret", response.text)


class StoreSelectionTests(unittest.TestCase):

    def test_memory_backend(self):
        with mock.patch.dict(os.environ, {"STORE_BACKEND": "memory"}):
            store = connect_store()
        self.assertEqual(store.backend, "memory")
        self.assertFalse(store.fallback)

    def test_fallback_without_database_url(self):
        with mock.patch.dict(os.environ, {"STORE_BACKEND": "auto"}):
            os.environ.pop("DATABASE_URL", None)
            store = connect_store()
        self.assertEqual(store.backend, "memory")
        self.assertTrue(store.fallback)

    def test_mongo_backend_requires_url(self):
        with mock.patch.dict(os.environ, {"STORE_BACKEND": "mongo"}):
            os.environ.pop("DATABASE_URL", None)
            with self.assertRaises(RuntimeError):
                connect_store()


if __name__ == "__main__":
    unittest.main()
