import threading
import unittest

from familyhub.dispatcher import SyncDispatcher
from familyhub.models import AccountOutcome, SyncResult


class SyncDispatcherTests(unittest.TestCase):
    def test_inline_mode_runs_immediately(self) -> None:
        dispatcher = SyncDispatcher(max_workers=0)
        calls: list[int] = []
        future = dispatcher.submit("inline", calls.append, 5)
        self.assertTrue(future.done())
        self.assertEqual(calls, [5])

    def test_inline_failure_is_captured_and_logged(self) -> None:
        dispatcher = SyncDispatcher(max_workers=0)

        def boom() -> None:
            raise RuntimeError("store unavailable")

        with self.assertLogs("familyhub.dispatcher", level="ERROR") as logs:
            future = dispatcher.submit("boom", boom)
        self.assertIsInstance(future.exception(), RuntimeError)
        self.assertIn("boom", logs.output[0])

    def test_pool_runs_off_request_thread(self) -> None:
        dispatcher = SyncDispatcher(max_workers=2)
        names: list[str] = []
        try:
            future = dispatcher.submit("pool", lambda: names.append(threading.current_thread().name))
            future.result(timeout=5)
        finally:
            dispatcher.shutdown()
        self.assertTrue(names[0].startswith("familyhub-sync"))

    def test_result_summary_is_logged(self) -> None:
        dispatcher = SyncDispatcher(max_workers=0)
        result = SyncResult(
            operation="create",
            event_id=1,
            outcomes=[AccountOutcome(account_id=1, action="create", success=False, error="x")],
        )
        with self.assertLogs("familyhub.dispatcher", level="INFO") as logs:
            dispatcher.submit("create", lambda: result)
        self.assertIn("1 accounts, 1 failed", logs.output[0])


if __name__ == "__main__":
    unittest.main()
