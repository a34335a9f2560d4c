import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from cardgate.app import create_app
from cardgate.cards import CardService, KVCardRepository
from cardgate.dependencies import get_card_service, get_kv_store
from cardgate.errors import ConnectionFailedError
from cardgate.kv import InMemoryKVStore

PREFIX = "/api/v1"


def _seed_access(store, namespace="tenant"):
    now = datetime.now(timezone.utc)
    device = {"sn": "SN-001", "status": "active"}
    card = {
        "number": "12345",
        "effective_at": (now - timedelta(hours=1)).isoformat(),
        "invalid_at": (now + timedelta(hours=1)).isoformat(),
        "devices": ["SN-001"],
    }
    store.set(namespace, "devices", "SN-001", json.dumps(device).encode())
    store.set(namespace, "devices", "SN-OFF", json.dumps(
        {"sn": "SN-OFF", "status": "disabled"}
    ).encode())
    store.set(namespace, "cards", "12345", json.dumps(card).encode())


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryKVStore()
        self.app = create_app()
        self.app.dependency_overrides[get_kv_store] = lambda: self.store
        self.app.dependency_overrides[get_card_service] = lambda: CardService(
            KVCardRepository(self.store)
        )
        self.client = TestClient(self.app)

    def tearDown(self):
        self.app.dependency_overrides.clear()


class HealthTests(ApiTestCase):
    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_root_reports_backend(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["backend"], "memory")


class KVRouteTests(ApiTestCase):
    def test_set_get_delete(self):
        url = f"{PREFIX}/kv/tenant/cards/card_001"
        response = self.client.post(url, json={"value": {"name": "Alice"}})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(self.store.get("tenant", "cards", "card_001"), b'{"name": "Alice"}')

        response = self.client.get(url)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["value"], {"name": "Alice"})

        self.assertEqual(self.client.head(url).status_code, 200)
        self.assertEqual(self.client.delete(url).status_code, 200)
        self.assertEqual(self.client.head(url).status_code, 404)

        response = self.client.delete(url)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"]["code"], "KEY_NOT_FOUND")

    def test_get_missing_key(self):
        response = self.client.get(f"{PREFIX}/kv/tenant/cards/nope")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"]["code"], "KEY_NOT_FOUND")

    def test_string_values_are_stored_verbatim(self):
        url = f"{PREFIX}/kv/tenant/cards/raw"
        self.client.post(url, json={"value": '{"a": 1}'})
        self.assertEqual(self.store.get("tenant", "cards", "raw"), b'{"a": 1}')
        self.assertEqual(self.client.get(url).json()["value"], {"a": 1})

    def test_undecodable_value(self):
        self.store.set("tenant", "cards", "bin", b"\xff\xfe")
        response = self.client.get(f"{PREFIX}/kv/tenant/cards/bin")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"]["code"], "DECODE_ERROR")

    def test_backend_failure_is_opaque(self):
        store = MagicMock()
        store.get.side_effect = ConnectionFailedError("secret host detail")
        self.app.dependency_overrides[get_kv_store] = lambda: store
        response = self.client.get(f"{PREFIX}/kv/tenant/cards/k")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"]["code"], "INTERNAL_ERROR")
        self.assertNotIn("secret", response.text)


class BatchRouteTests(ApiTestCase):
    def test_batch_set_reports_per_item_results(self):
        response = self.client.post(
            f"{PREFIX}/kv/batch",
            json={
                "operations": [
                    {"namespace": "tenant", "collection": "cards", "key": "a", "value": 1},
                    {"namespace": "tenant", "collection": "", "key": "b", "value": 2},
                ]
            },
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["success_count"], 1)
        self.assertEqual(payload["failure_count"], 1)
        self.assertTrue(payload["results"][0]["success"])
        self.assertFalse(payload["results"][1]["success"])
        self.assertEqual(self.store.get("tenant", "cards", "a"), b"1")

    def test_batch_delete(self):
        self.store.set("tenant", "cards", "a", b"1")
        response = self.client.request(
            "DELETE",
            f"{PREFIX}/kv/batch",
            json={
                "operations": [
                    {"namespace": "tenant", "collection": "cards", "key": "a"},
                    {"namespace": "tenant", "collection": "cards", "key": "missing"},
                ]
            },
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["success_count"], 1)
        self.assertEqual(payload["results"][1]["error"], "key not found")

    def test_empty_batch_rejected(self):
        response = self.client.post(f"{PREFIX}/kv/batch", json={"operations": []})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "EMPTY_OPERATIONS")


class VerifyRouteTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        _seed_access(self.store)

    def verify(self, body, sn="SN-001", namespace="tenant"):
        headers = {"X-Device-SN": sn} if sn else {}
        return self.client.post(
            f"{PREFIX}/namespaces/{namespace}", content=body, headers=headers
        )

    def test_authorized(self):
        self.assertEqual(self.verify(b"12345").status_code, 204)

    def test_unknown_records(self):
        self.assertEqual(self.verify(b"99999").status_code, 404)
        self.assertEqual(self.verify(b"12345", sn="SN-404").status_code, 404)

    def test_inactive_device_forbidden(self):
        self.assertEqual(self.verify(b"12345", sn="SN-OFF").status_code, 403)

    def test_missing_header_or_card(self):
        self.assertEqual(self.verify(b"12345", sn=None).status_code, 400)
        self.assertEqual(self.verify(b"").status_code, 400)

    def test_storage_unavailable(self):
        service = MagicMock()
        service.verify.side_effect = ConnectionFailedError("down")
        self.app.dependency_overrides[get_card_service] = lambda: service
        self.assertEqual(self.verify(b"12345").status_code, 503)

    def test_malformed_card_record_is_server_error(self):
        self.store.set("tenant", "cards", "12345", b'{"number": "12345"}')
        self.assertEqual(self.verify(b"12345").status_code, 500)
        url = f"{PREFIX}/namespaces/tenant/device/SN-001/vguang"
        self.assertEqual(self.client.post(url, content=b"12345").status_code, 404)

    def test_vguang_success_body(self):
        response = self.client.post(
            f"{PREFIX}/namespaces/tenant/device/SN-001/vguang", content=b"12345"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, "code=0000")

    def test_vguang_denials_are_404(self):
        url = f"{PREFIX}/namespaces/tenant/device/SN-OFF/vguang"
        self.assertEqual(self.client.post(url, content=b"12345").status_code, 404)
        url = f"{PREFIX}/namespaces/tenant/device/SN-001/vguang"
        self.assertEqual(self.client.post(url, content=b"").status_code, 404)
        self.assertEqual(self.client.post(url, content=b"99999").status_code, 404)


if __name__ == "__main__":
    unittest.main()
