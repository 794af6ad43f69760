from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from familyhub.caldav_client import CalDAVTransport
from familyhub.models import CalendarCollection, SyncAccount


logger = logging.getLogger(__name__)

DiscoveredCallback = Callable[[SyncAccount, CalendarCollection], None]


@dataclass
class AccountConnection:
    account_id: int
    transport: CalDAVTransport
    collection_url: str
    calendar_name: str = ""
    fresh: bool = False

    def put_event(self, account: SyncAccount, uid: str, ics_data: str) -> None:
        self.transport.put_event(self.collection_url, account.email, account.app_password, uid, ics_data)

    def delete_event(self, account: SyncAccount, uid: str) -> None:
        self.transport.delete_event(self.collection_url, account.email, account.app_password, uid)


class AccountConnectionCache:
    """Memoized collection URL per account id.

    Entries never expire on their own. Callers invalidate on credential edits,
    account deletion, explicit connection tests and transport failures.
    """

    def __init__(
        self,
        transport: CalDAVTransport,
        on_discovered: Optional[DiscoveredCallback] = None,
    ) -> None:
        self.transport = transport
        self.on_discovered = on_discovered
        self._lock = threading.RLock()
        self._entries: dict[int, AccountConnection] = {}

    def get(self, account: SyncAccount, force_discovery: bool = False) -> AccountConnection:
        with self._lock:
            cached = None if force_discovery else self._entries.get(account.id)
        if cached is not None:
            return AccountConnection(
                account_id=cached.account_id,
                transport=cached.transport,
                collection_url=cached.collection_url,
                calendar_name=cached.calendar_name,
                fresh=False,
            )

        if account.calendar_url and not force_discovery:
            connection = AccountConnection(
                account_id=account.id,
                transport=self.transport,
                collection_url=account.calendar_url,
                calendar_name=account.calendar_name or "",
                fresh=False,
            )
        else:
            # Discovery runs outside the lock; a racing duplicate is harmless.
            collection = self.transport.discover_calendar_collection(account.email, account.app_password)
            connection = AccountConnection(
                account_id=account.id,
                transport=self.transport,
                collection_url=collection.url,
                calendar_name=collection.name,
                fresh=True,
            )
            if self.on_discovered is not None:
                self.on_discovered(account, collection)
        with self._lock:
            self._entries[account.id] = connection
        return connection

    def peek(self, account_id: int) -> AccountConnection | None:
        with self._lock:
            return self._entries.get(account_id)

    def invalidate(self, account_id: int) -> None:
        with self._lock:
            removed = self._entries.pop(account_id, None)
        if removed is not None:
            logger.debug("Invalidated cached connection for account %s", account_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
