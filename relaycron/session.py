"""Session cache handing out authorised HTTP clients per identity."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .models import SessionRecord, utcnow
from .state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., httpx.AsyncClient]
LoginCallback = Callable[[ClientFactory], Awaitable[httpx.AsyncClient]]


class SessionManager:
    """Return a usable client for an identity, logging in when needed.

    Parameters
    ----------
    store:
        State store of the task group the sessions belong to.
    client_factory:
        Callable building the client handle; ``httpx.AsyncClient`` by
        default. It is also what the login callback receives.
    clock:
        Returns the current aware UTC datetime.
    touch_on_restore:
        When ``True`` a still valid session restored from disk is
        re-persisted with a fresh expiration date. By default only real
        logins update the stored expiration.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        client_factory: ClientFactory = httpx.AsyncClient,
        clock: Callable[[], datetime] = utcnow,
        touch_on_restore: bool = False,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._clock = clock
        self._touch_on_restore = touch_on_restore
        self._clients: Dict[str, httpx.AsyncClient] = {}
        self._retired: List[httpx.AsyncClient] = []
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        return lock

    def _read(self, identity: str) -> Optional[SessionRecord]:
        try:
            return self._store.get_session(identity)
        except StateStoreError:
            logger.exception("Unreadable session identity=%s; logging in again", identity)
            return None

    def _persist(self, identity: str, client: httpx.AsyncClient, lifetime_ms: int) -> SessionRecord:
        record = SessionRecord(
            headers=dict(client.headers),
            expiration_date=self._clock() + timedelta(milliseconds=lifetime_ms),
            base_url=str(client.base_url) or None,
        )
        self._store.set_session(identity, record)
        return record

    def _restore(self, record: SessionRecord) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"headers": record.headers}
        if record.base_url:
            kwargs["base_url"] = record.base_url
        return self._client_factory(**kwargs)

    async def acquire(
        self, identity: str, login: LoginCallback, lifetime_ms: int
    ) -> httpx.AsyncClient:
        """Return a client whose credentials are not expired."""

        async with self._lock_for(identity):
            record = self._read(identity)
            if record is None or record.is_expired(self._clock()):
                logger.info("Logging in identity=%s store=%s", identity, self._store.path)
                client = await login(self._client_factory)
                self._persist(identity, client, lifetime_ms)
                previous = self._clients.get(identity)
                if previous is not None and previous is not client:
                    self._retired.append(previous)
                self._clients[identity] = client
                return client

            client = self._clients.get(identity)
            if client is None:
                client = self._restore(record)
                if self._touch_on_restore:
                    self._persist(identity, client, lifetime_ms)
                self._clients[identity] = client
                logger.debug("Restored session identity=%s", identity)
            return client

    def invalidate(self, identity: str) -> None:
        """Drop the client and expire the stored session.

        The next :meth:`acquire` for ``identity`` runs the login callback.
        """

        client = self._clients.pop(identity, None)
        if client is not None:
            self._retired.append(client)
        record = self._read(identity)
        now = self._clock()
        if record is not None and not record.is_expired(now):
            self._store.set_session(identity, replace(record, expiration_date=now))
            logger.info("Session invalidated identity=%s", identity)

    async def aclose(self) -> None:
        clients: List[Any] = list(self._clients.values()) + self._retired
        self._clients.clear()
        self._retired = []
        for client in clients:
            try:
                await client.aclose()
            except Exception:
                logger.exception("Failed to close HTTP client")
