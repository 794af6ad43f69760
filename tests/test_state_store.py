import tempfile
import unittest
from datetime import date, time
from pathlib import Path

from familyhub.models import CalendarEventData
from familyhub.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.account = self.store.create_account(email="me@example.com", app_password="secret")
        self.event = self.store.create_event(
            CalendarEventData(title="Dinner", date=date(2026, 2, 10), time=time(18, 0))
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_event_round_trip(self) -> None:
        loaded = self.store.get_event(self.event.id)
        self.assertEqual(loaded.title, "Dinner")
        self.assertEqual(loaded.date, date(2026, 2, 10))
        self.assertEqual(loaded.time, time(18, 0))
        self.assertFalse(loaded.all_day)

    def test_update_event_applies_only_given_fields(self) -> None:
        updated = self.store.update_event(self.event.id, {"title": "Late dinner", "time": "19:30"})
        self.assertEqual(updated.title, "Late dinner")
        self.assertEqual(updated.time, time(19, 30))
        self.assertEqual(updated.date, date(2026, 2, 10))

    def test_mapping_lifecycle(self) -> None:
        self.store.insert_mapping(self.event.id, self.account.id, None)
        rows = self.store.list_mappings_by_event(self.event.id)
        self.assertEqual(len(rows), 1)
        self.assertTrue(rows[0].pending)
        self.assertEqual(self.store.list_pending_mappings(), rows)

        self.store.update_mapping_uid(self.event.id, self.account.id, "uid-1")
        self.assertEqual(self.store.list_mappings_by_account(self.account.id)[0].ical_uid, "uid-1")
        self.assertEqual(self.store.list_pending_mappings(), [])

        self.store.delete_mapping(self.event.id, self.account.id)
        self.assertEqual(self.store.list_mappings_by_event(self.event.id), [])

    def test_insert_mapping_keeps_existing_row(self) -> None:
        self.store.insert_mapping(self.event.id, self.account.id, "uid-1")
        self.store.insert_mapping(self.event.id, self.account.id, None)
        rows = self.store.list_mappings_by_event(self.event.id)
        self.assertEqual([row.ical_uid for row in rows], ["uid-1"])

    def test_deleting_event_cascades_mapping_rows(self) -> None:
        self.store.insert_mapping(self.event.id, self.account.id, "uid-1")
        self.assertTrue(self.store.delete_event(self.event.id))
        self.assertEqual(self.store.list_mappings_by_account(self.account.id), [])

    def test_uid_update_reports_missing_row(self) -> None:
        self.store.insert_mapping(self.event.id, self.account.id, None)
        self.assertTrue(self.store.update_mapping_uid(self.event.id, self.account.id, "uid-1"))
        self.store.delete_event(self.event.id)
        self.assertFalse(self.store.update_mapping_uid(self.event.id, self.account.id, "uid-1"))

    def test_clear_calendar_urls(self) -> None:
        other = self.store.create_account(email="you@example.com", app_password="pw")
        self.store.set_calendar_url(self.account.id, "https://dav/a/", "Home")
        self.store.set_calendar_url(other.id, "https://dav/b/", "Home")
        self.store.clear_calendar_urls()
        self.assertEqual([account.calendar_url for account in self.store.list_accounts()], [None, None])

    def test_credential_change_clears_calendar_url(self) -> None:
        self.store.set_calendar_url(self.account.id, "https://dav/home/", "Home")
        unchanged = self.store.update_account(self.account.id, email="me@example.com")
        self.assertEqual(unchanged.calendar_url, "https://dav/home/")
        changed = self.store.update_account(self.account.id, app_password="new-secret")
        self.assertIsNone(changed.calendar_url)
        self.assertEqual(changed.app_password, "new-secret")

    def test_series_shares_group_and_group_mappings(self) -> None:
        events = self.store.create_series(
            [
                CalendarEventData(title="Piano", date=date(2026, 3, 2), time=time(15, 0)),
                CalendarEventData(title="Piano", date=date(2026, 3, 9), time=time(15, 0)),
            ]
        )
        group_id = events[0].recurring_group_id
        self.assertIsNotNone(group_id)
        self.assertEqual({event.recurring_group_id for event in events}, {group_id})
        self.store.insert_mapping(events[0].id, self.account.id, "uid-a")
        self.store.insert_mapping(events[1].id, self.account.id, "uid-b")
        self.assertEqual(len(self.store.list_mappings_by_group(group_id)), 2)
        self.assertEqual(self.store.delete_group(group_id), 2)
        self.assertEqual(self.store.list_events_in_group(group_id), [])
        self.assertEqual(self.store.list_mappings_by_group(group_id), [])

    def test_public_account_dict_hides_password(self) -> None:
        payload = self.store.get_account(self.account.id).to_public_dict()
        self.assertNotIn("app_password", payload)
        self.assertTrue(payload["has_password"])


if __name__ == "__main__":
    unittest.main()
