import threading
import time
import unittest

from cardgate.errors import ConnectionFailedError, DeadlineExceededError, KeyNotFoundError
from cardgate.kv import DEFAULT_NAMESPACE, Deadline, InMemoryKVStore, normalize_namespace


class NormalizeNamespaceTests(unittest.TestCase):
    def test_empty_namespace_maps_to_default(self):
        self.assertEqual(normalize_namespace(""), DEFAULT_NAMESPACE)
        self.assertEqual(normalize_namespace(""), normalize_namespace("default"))

    def test_non_empty_namespace_is_untouched(self):
        for namespace in ["tenant-a", "Tenant-A", " spaced ", "default"]:
            self.assertEqual(normalize_namespace(namespace), namespace)


class DeadlineTests(unittest.TestCase):
    def test_unbounded_deadline_never_expires(self):
        deadline = Deadline()
        self.assertIsNone(deadline.remaining())
        self.assertFalse(deadline.expired())
        deadline.check()

    def test_expired_deadline_raises_connection_failure(self):
        deadline = Deadline.after(0.0)
        time.sleep(0.001)
        self.assertTrue(deadline.expired())
        with self.assertRaises(DeadlineExceededError) as ctx:
            deadline.check("file")
        self.assertIsInstance(ctx.exception, ConnectionFailedError)
        self.assertEqual(ctx.exception.backend, "file")

    def test_cancel_fails_subsequent_checks(self):
        deadline = Deadline.after(60)
        deadline.check()
        deadline.cancel()
        self.assertTrue(deadline.cancelled)
        self.assertEqual(deadline.remaining(), 0.0)
        with self.assertRaises(DeadlineExceededError):
            deadline.check()


class InMemoryKVStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryKVStore()

    def test_set_get_roundtrip(self):
        self.store.set("ns", "cards", "k1", b'{"a": 1}')
        self.assertEqual(self.store.get("ns", "cards", "k1"), b'{"a": 1}')

    def test_empty_namespace_shares_default_partition(self):
        self.store.set("", "cards", "k1", b"v")
        self.assertEqual(self.store.get("default", "cards", "k1"), b"v")

    def test_delete_twice_reports_not_found(self):
        self.store.set("ns", "cards", "k1", b"v")
        self.store.delete("ns", "cards", "k1")
        with self.assertRaises(KeyNotFoundError):
            self.store.delete("ns", "cards", "k1")
        with self.assertRaises(KeyNotFoundError):
            self.store.get("ns", "cards", "k1")

    def test_exists(self):
        self.assertFalse(self.store.exists("ns", "cards", "k1"))
        self.store.set("ns", "cards", "k1", b"v")
        self.assertTrue(self.store.exists("ns", "cards", "k1"))

    def test_expired_deadline_blocks_call(self):
        deadline = Deadline()
        deadline.cancel()
        with self.assertRaises(DeadlineExceededError):
            self.store.set("ns", "cards", "k1", b"v", deadline=deadline)
        self.assertFalse(self.store.exists("ns", "cards", "k1"))

    def test_concurrent_writers(self):
        def writer(index):
            for i in range(50):
                self.store.set("ns", "c", f"{index}-{i}", b"x")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(self.store.data), 200)


if __name__ == "__main__":
    unittest.main()
