from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator

from familyhub.caldav_client import CalDAVTransport
from familyhub.connection_cache import AccountConnection, AccountConnectionCache
from familyhub.errors import AccountMissingError, MappingStoreError, SyncError, TransportError
from familyhub.ics import build_ics
from familyhub.models import (
    AccountOutcome,
    AppConfig,
    CalendarCollection,
    CalendarEventData,
    ConnectionTestResult,
    EventAccountSync,
    SyncAccount,
    SyncResult,
    default_app_config,
)
from familyhub.state_store import StateStore


logger = logging.getLogger(__name__)

ACCOUNT_MISSING = "account_missing"


def _new_uid() -> str:
    return str(uuid.uuid4())


def _unique_ids(account_ids: Iterable[int]) -> list[int]:
    seen: set[int] = set()
    ordered: list[int] = []
    for raw in account_ids:
        account_id = int(raw)
        if account_id in seen:
            continue
        seen.add(account_id)
        ordered.append(account_id)
    return ordered


def _require_event_id(event: CalendarEventData) -> int:
    if event.id is None:
        raise ValueError("event must be persisted before it can be synced")
    return int(event.id)


class SyncCoordinator:
    """Keeps remote CalDAV copies of local events in line with the mapping table.

    Each (event, account) pair is handled independently. Failures are recorded
    per account in the returned SyncResult and never abort sibling work; only
    MappingStoreError escapes, since nothing can be recorded without the store.

    Operations on the same event are serialized, so a pending row is only ever
    written by the call that inserted it.
    """

    def __init__(
        self,
        state_store: StateStore,
        transport: CalDAVTransport,
        config: AppConfig | None = None,
        connection_cache: AccountConnectionCache | None = None,
        uid_factory: Callable[[], str] = _new_uid,
    ) -> None:
        self.state_store = state_store
        self.transport = transport
        self.config = config or default_app_config()
        self.connections = connection_cache or AccountConnectionCache(
            transport, on_discovered=self._remember_collection
        )
        self.uid_factory = uid_factory
        self._locks_guard = threading.Lock()
        self._event_locks: dict[int, threading.RLock] = {}

    @contextmanager
    def _event_lock(self, event_id: int) -> Iterator[None]:
        with self._locks_guard:
            lock = self._event_locks.setdefault(int(event_id), threading.RLock())
        with lock:
            yield

    # Connection handling

    def _remember_collection(self, account: SyncAccount, collection: CalendarCollection) -> None:
        self.state_store.set_calendar_url(account.id, collection.url, collection.name)

    def invalidate_account(self, account_id: int) -> None:
        self.connections.invalidate(account_id)

    def reset_connections(self) -> None:
        """Drop every memoized and persisted collection URL."""
        self.connections.clear()
        self.state_store.clear_calendar_urls()

    def _forget_connection(self, account: SyncAccount) -> None:
        self.connections.invalidate(account.id)
        self.state_store.set_calendar_url(account.id, None, None)

    def _call_remote(self, account: SyncAccount, operation: Callable[[AccountConnection], None]) -> None:
        connection = self.connections.get(account)
        try:
            operation(connection)
            return
        except TransportError as exc:
            self._forget_connection(account)
            if connection.fresh:
                raise
            logger.warning("Account %s: %s; retrying after rediscovery", account.id, exc)
        connection = self.connections.get(account, force_discovery=True)
        try:
            operation(connection)
        except TransportError:
            self._forget_connection(account)
            raise

    def test_connection(self, account: SyncAccount) -> ConnectionTestResult:
        self.connections.invalidate(account.id)
        try:
            connection = self.connections.get(account, force_discovery=True)
        except SyncError as exc:
            logger.warning("Account %s: connection test failed: %s", account.id, exc)
            return ConnectionTestResult(connected=False, error=str(exc))
        return ConnectionTestResult(
            connected=True,
            calendar_name=connection.calendar_name,
            calendar_url=connection.collection_url,
        )

    # Per-account steps

    def _load_account(self, account_id: int) -> SyncAccount:
        account = self.state_store.get_account(account_id)
        if account is None:
            raise AccountMissingError(f"account {account_id} no longer exists")
        return account

    def _encode(self, uid: str, event: CalendarEventData) -> str:
        return build_ics(
            uid,
            event,
            product_id=self.config.caldav.product_id,
            include_color=self.config.sync.include_color,
        )

    def _create_remote(
        self,
        event: CalendarEventData,
        account: SyncAccount,
        existing: EventAccountSync | None,
    ) -> str:
        event_id = _require_event_id(event)
        if existing is not None and existing.ical_uid:
            return self._update_remote(event, account, existing.ical_uid)

        inserted = existing is None
        if inserted:
            # Record intent before the network call so a crash leaves a pending row.
            self.state_store.insert_mapping(event_id, account.id, None)
        uid = self.uid_factory()
        ics_data = self._encode(uid, event)
        try:
            self._call_remote(account, lambda conn: conn.put_event(account, uid, ics_data))
        except Exception:
            if inserted:
                self.state_store.delete_mapping(event_id, account.id)
            raise
        if not self.state_store.update_mapping_uid(event_id, account.id, uid):
            # The event or account was deleted while the PUT was in flight.
            self._call_remote(account, lambda conn: conn.delete_event(account, uid))
            raise SyncError(f"event {event_id} was removed during sync; remote copy {uid} deleted")
        logger.info("Account %s: created event %r (%s)", account.id, event.title, uid)
        return uid

    def _update_remote(self, event: CalendarEventData, account: SyncAccount, uid: str) -> str:
        ics_data = self._encode(uid, event)
        self._call_remote(account, lambda conn: conn.put_event(account, uid, ics_data))
        logger.info("Account %s: updated event %r (%s)", account.id, event.title, uid)
        return uid

    def _delete_remote(self, account: SyncAccount, mapping: EventAccountSync) -> str | None:
        if mapping.ical_uid:
            uid = mapping.ical_uid
            self._call_remote(account, lambda conn: conn.delete_event(account, uid))
            logger.info("Account %s: deleted event %s", account.id, uid)
        self.state_store.delete_mapping(mapping.event_id, mapping.account_id)
        return mapping.ical_uid

    def _attempt(
        self,
        result: SyncResult,
        account_id: int,
        action: str,
        step: Callable[[], str | None],
    ) -> AccountOutcome:
        try:
            uid = step()
        except MappingStoreError:
            raise
        except AccountMissingError as exc:
            logger.warning("Skipping %s for missing account %s: %s", action, account_id, exc)
            outcome = AccountOutcome(account_id=account_id, action=action, success=False, error=ACCOUNT_MISSING)
        except SyncError as exc:
            logger.warning("Account %s: %s failed for event %s: %s", account_id, action, result.event_id, exc)
            outcome = AccountOutcome(account_id=account_id, action=action, success=False, error=str(exc))
        except Exception as exc:
            logger.error(
                "Account %s: unexpected %s failure for event %s",
                account_id,
                action,
                result.event_id,
                exc_info=True,
            )
            outcome = AccountOutcome(account_id=account_id, action=action, success=False, error=str(exc))
        else:
            outcome = AccountOutcome(account_id=account_id, action=action, success=True, ical_uid=uid)
        result.outcomes.append(outcome)
        return outcome

    def _snapshot(self, event_id: int) -> dict[int, EventAccountSync]:
        return {row.account_id: row for row in self.state_store.list_mappings_by_event(event_id)}

    def _create_step(
        self, event: CalendarEventData, account_id: int, existing: EventAccountSync | None
    ) -> Callable[[], str | None]:
        return lambda: self._create_remote(event, self._load_account(account_id), existing)

    def _update_step(self, event: CalendarEventData, mapping: EventAccountSync) -> Callable[[], str | None]:
        if mapping.pending:
            return self._create_step(event, mapping.account_id, mapping)
        uid = mapping.ical_uid or ""
        return lambda: self._update_remote(event, self._load_account(mapping.account_id), uid)

    def _delete_step(self, mapping: EventAccountSync, account: SyncAccount | None = None) -> Callable[[], str | None]:
        def step() -> str | None:
            target = account if account is not None else self._load_account(mapping.account_id)
            return self._delete_remote(target, mapping)

        return step

    # Public operations

    def sync_create(self, event: CalendarEventData, account_ids: Iterable[int]) -> SyncResult:
        event_id = _require_event_id(event)
        result = SyncResult(operation="create", event_id=event_id)
        with self._event_lock(event_id):
            current = self._snapshot(event_id)
            for account_id in _unique_ids(account_ids):
                existing = current.get(account_id)
                action = "update" if existing is not None and existing.ical_uid else "create"
                self._attempt(result, account_id, action, self._create_step(event, account_id, existing))
        return result

    def sync_update(self, event: CalendarEventData) -> SyncResult:
        event_id = _require_event_id(event)
        result = SyncResult(operation="update", event_id=event_id)
        with self._event_lock(event_id):
            for mapping in self._snapshot(event_id).values():
                action = "create" if mapping.pending else "update"
                self._attempt(result, mapping.account_id, action, self._update_step(event, mapping))
        return result

    def sync_delete(self, event_id: int, mappings: Iterable[EventAccountSync]) -> SyncResult:
        """Remove remote copies for mapping rows captured before the local delete."""
        result = SyncResult(operation="delete", event_id=int(event_id))
        with self._event_lock(event_id):
            for mapping in mappings:
                self._attempt(result, mapping.account_id, "delete", self._delete_step(mapping))
        return result

    def sync_diff(self, event: CalendarEventData, new_account_ids: Iterable[int]) -> SyncResult:
        event_id = _require_event_id(event)
        result = SyncResult(operation="diff", event_id=event_id)
        desired = _unique_ids(new_account_ids)
        desired_set = set(desired)
        with self._event_lock(event_id):
            current = self._snapshot(event_id)
            additions = [account_id for account_id in desired if account_id not in current]
            removals = [row for account_id, row in current.items() if account_id not in desired_set]
            retained = [row for account_id, row in current.items() if account_id in desired_set]

            for account_id in additions:
                self._attempt(result, account_id, "create", self._create_step(event, account_id, None))
            for mapping in removals:
                self._attempt(result, mapping.account_id, "delete", self._delete_step(mapping))
            for mapping in retained:
                action = "create" if mapping.pending else "update"
                self._attempt(result, mapping.account_id, action, self._update_step(event, mapping))
        return result

    def sync_create_series(
        self, events: Iterable[CalendarEventData], account_ids: Iterable[int]
    ) -> dict[int, SyncResult]:
        targets = _unique_ids(account_ids)
        return {_require_event_id(event): self.sync_create(event, targets) for event in events}

    def sync_update_series(self, events: Iterable[CalendarEventData]) -> dict[int, SyncResult]:
        return {_require_event_id(event): self.sync_update(event) for event in events}

    def sync_diff_series(
        self, events: Iterable[CalendarEventData], new_account_ids: Iterable[int]
    ) -> dict[int, SyncResult]:
        targets = _unique_ids(new_account_ids)
        return {_require_event_id(event): self.sync_diff(event, targets) for event in events}

    def sync_delete_series(self, mappings: Iterable[EventAccountSync]) -> dict[int, SyncResult]:
        grouped: dict[int, list[EventAccountSync]] = {}
        for mapping in mappings:
            grouped.setdefault(mapping.event_id, []).append(mapping)
        return {event_id: self.sync_delete(event_id, rows) for event_id, rows in grouped.items()}

    def account_removed(self, account: SyncAccount, mappings: Iterable[EventAccountSync]) -> SyncResult:
        """Delete remote copies for an account whose local row is already gone."""
        result = SyncResult(operation="account_removed")
        for mapping in mappings:
            with self._event_lock(mapping.event_id):
                self._attempt(result, account.id, "delete", self._delete_step(mapping, account=account))
        self.connections.invalidate(account.id)
        return result

    def retry_pending(self) -> list[SyncResult]:
        """Re-attempt creation for every mapping row that never received a uid."""
        results: list[SyncResult] = []
        for candidate in self.state_store.list_pending_mappings():
            with self._event_lock(candidate.event_id):
                # Another operation may have finished the row since the listing.
                mapping = self._snapshot(candidate.event_id).get(candidate.account_id)
                event = self.state_store.get_event(candidate.event_id)
                if mapping is None or not mapping.pending or event is None:
                    continue
                result = SyncResult(operation="retry", event_id=mapping.event_id)
                self._attempt(
                    result, mapping.account_id, "create", self._create_step(event, mapping.account_id, mapping)
                )
            results.append(result)
        return results
