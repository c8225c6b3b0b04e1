"""Component wiring shared by the API process and the standalone worker."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from psycopg_pool import ConnectionPool

from .config import Settings
from .domain.policy import QuotaPolicy
from .domain.ports import FaucetStore
from .domain.service import FaucetService
from .ledger_client import HttpLedgerClient, InMemoryLedgerClient, LedgerClient
from .memory_repository import InMemoryFaucetStore
from .repository import PostgresFaucetStore
from .worker import SubmissionWorker

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(threadName)s %(message)s",
    )


@dataclass
class Components:
    store: FaucetStore
    ledger_client: LedgerClient
    service: FaucetService
    settings: Settings
    pool: ConnectionPool | None = None
    _closers: list[Callable[[], None]] = field(default_factory=list)

    def worker_factory(self, index: int) -> SubmissionWorker:
        return SubmissionWorker.from_settings(
            self.store, self.service.ledger, self.ledger_client, self.settings
        )

    def close(self) -> None:
        for closer in reversed(self._closers):
            closer()
        self._closers.clear()


def build_store(settings: Settings) -> tuple[FaucetStore, ConnectionPool | None]:
    if settings.storage_backend == "memory":
        logger.warning("using the in-memory store; state is lost on restart")
        return InMemoryFaucetStore(), None
    if settings.storage_backend != "postgres":
        raise ValueError(f"unknown FAUCET_STORAGE_BACKEND {settings.storage_backend!r}")
    pool = ConnectionPool(settings.database_url, max_size=settings.database_pool_max_size, open=False)
    pool.open()
    store = PostgresFaucetStore(pool)
    if settings.auto_migrate:
        store.ensure_schema()
    return store, pool


def build_ledger_client(settings: Settings) -> LedgerClient:
    if not settings.ledger_base_url:
        logger.warning("FAUCET_LEDGER_URL unset; transfers go to the in-process mock ledger")
        return InMemoryLedgerClient()
    return HttpLedgerClient(
        settings.ledger_base_url,
        timeout_seconds=settings.ledger_timeout_seconds,
        api_key=settings.ledger_api_key or None,
    )


def build_components(settings: Settings) -> Components:
    store, pool = build_store(settings)
    client = build_ledger_client(settings)
    components = Components(
        store=store,
        ledger_client=client,
        service=FaucetService(store, QuotaPolicy.from_settings(settings)),
        settings=settings,
        pool=pool,
    )
    if pool is not None:
        components._closers.append(pool.close)
    if isinstance(client, HttpLedgerClient):
        components._closers.append(client.close)
    return components
