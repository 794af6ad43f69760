import threading
import unittest
from unittest import mock

from familyhub.connection_cache import AccountConnectionCache
from familyhub.models import CalendarCollection, SyncAccount


class AccountConnectionCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = mock.Mock()
        self.transport.discover_calendar_collection.return_value = CalendarCollection(
            url="https://dav.example.com/cal/home/", name="Home"
        )
        self.discovered: list[tuple[int, str]] = []
        self.cache = AccountConnectionCache(
            self.transport,
            on_discovered=lambda account, collection: self.discovered.append((account.id, collection.url)),
        )
        self.account = SyncAccount(id=1, email="me@example.com", app_password="secret")

    def test_discovers_once_and_reuses(self) -> None:
        first = self.cache.get(self.account)
        second = self.cache.get(self.account)
        self.assertTrue(first.fresh)
        self.assertFalse(second.fresh)
        self.assertEqual(second.collection_url, "https://dav.example.com/cal/home/")
        self.transport.discover_calendar_collection.assert_called_once_with("me@example.com", "secret")
        self.assertEqual(self.discovered, [(1, "https://dav.example.com/cal/home/")])

    def test_persisted_url_skips_discovery(self) -> None:
        account = SyncAccount(id=2, email="x@example.com", app_password="p", calendar_url="https://dav/stored/")
        connection = self.cache.get(account)
        self.assertEqual(connection.collection_url, "https://dav/stored/")
        self.assertFalse(connection.fresh)
        self.transport.discover_calendar_collection.assert_not_called()

    def test_invalidate_forces_rediscovery(self) -> None:
        self.cache.get(self.account)
        self.cache.invalidate(self.account.id)
        self.assertIsNone(self.cache.peek(self.account.id))
        self.cache.get(self.account)
        self.assertEqual(self.transport.discover_calendar_collection.call_count, 2)

    def test_force_discovery_ignores_memo_and_persisted_url(self) -> None:
        account = SyncAccount(id=3, email="y@example.com", app_password="p", calendar_url="https://dav/old/")
        self.cache.get(account)
        connection = self.cache.get(account, force_discovery=True)
        self.assertTrue(connection.fresh)
        self.assertEqual(connection.collection_url, "https://dav.example.com/cal/home/")
        self.assertEqual(self.cache.peek(3).collection_url, "https://dav.example.com/cal/home/")

    def test_invalidate_unknown_account_is_noop(self) -> None:
        self.cache.invalidate(99)
        self.cache.clear()

    def test_concurrent_get_and_invalidate(self) -> None:
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                for _ in range(50):
                    self.cache.get(self.account)
                    self.cache.invalidate(self.account.id)
            except BaseException as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(errors, [])


if __name__ == "__main__":
    unittest.main()
