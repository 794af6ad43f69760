import unittest
from datetime import date, time

from familyhub.models import (
    AccountOutcome,
    AppConfig,
    CalendarEventData,
    ConnectionTestResult,
    EventAccountSync,
    SyncAccount,
    SyncResult,
    parse_time,
)


class ModelTests(unittest.TestCase):
    def test_event_from_dict_parses_strings(self) -> None:
        event = CalendarEventData.from_dict(
            {
                "title": "Football",
                "date": "2026-04-18",
                "time": "09:30",
                "end_time": "10:45:00",
                "color": "",
            }
        )
        self.assertEqual(event.date, date(2026, 4, 18))
        self.assertEqual(event.time, time(9, 30))
        self.assertEqual(event.end_time, time(10, 45))
        self.assertIsNone(event.color)
        self.assertFalse(event.is_all_day)
        self.assertEqual(event.to_dict()["time"], "09:30")

    def test_event_without_time_is_all_day(self) -> None:
        event = CalendarEventData(title="Holiday", date=date(2026, 5, 1))
        self.assertTrue(event.is_all_day)

    def test_event_requires_date(self) -> None:
        with self.assertRaises(ValueError):
            CalendarEventData.from_dict({"title": "No date"})

    def test_parse_time_rejects_garbage(self) -> None:
        with self.assertRaises(ValueError):
            parse_time("9")
        with self.assertRaises(ValueError):
            parse_time("25:00")

    def test_app_config_defaults_and_normalization(self) -> None:
        config = AppConfig.from_dict(
            {
                "caldav": {"server_url": "https://dav.example.com/", "timeout_seconds": 0},
                "sync": {"max_workers": 0},
                "logging": {"level": "debug"},
            }
        )
        self.assertEqual(config.caldav.server_url, "https://dav.example.com")
        self.assertEqual(config.caldav.timeout_seconds, 1)
        self.assertEqual(config.sync.max_workers, 1)
        self.assertEqual(config.logging.level, "DEBUG")
        self.assertEqual(config.to_dict()["caldav"]["product_id"], "-//Family Hub//EN")

    def test_account_repr_hides_password(self) -> None:
        account = SyncAccount(id=1, email="me@example.com", app_password="secret")
        self.assertNotIn("secret", repr(account))
        self.assertFalse(SyncAccount(id=2, email="x@example.com").to_public_dict()["has_password"])

    def test_mapping_pending_flag(self) -> None:
        self.assertTrue(EventAccountSync(event_id=1, account_id=2).pending)
        self.assertFalse(EventAccountSync(event_id=1, account_id=2, ical_uid="u").pending)

    def test_connection_result_omits_url(self) -> None:
        result = ConnectionTestResult(connected=False, calendar_url="https://dav/home/", error="401")
        self.assertEqual(result.to_dict(), {"connected": False, "error": "401"})

    def test_sync_result_partitions_outcomes(self) -> None:
        result = SyncResult(
            operation="create",
            event_id=7,
            outcomes=[
                AccountOutcome(account_id=1, action="create", success=True, ical_uid="u1"),
                AccountOutcome(account_id=2, action="create", success=False, error="boom"),
            ],
        )
        self.assertEqual([item.account_id for item in result.succeeded], [1])
        self.assertEqual([item.account_id for item in result.failed], [2])
        self.assertEqual(result.to_dict()["outcomes"][1]["error"], "boom")


if __name__ == "__main__":
    unittest.main()
