"""Dependency injection container for core services."""
import os

from ledgerlink.models.reconciliation import ReconciliationConfig
from ledgerlink.services.config import load_config_from_env
from ledgerlink.services.reconciliation_runner import ReconciliationRunner
from ledgerlink.services.store import CandidateStore, HttpCandidateStore, InMemoryCandidateStore
from ledgerlink.state.run_history import RunHistory


class ServiceContainer:
    def __init__(self) -> None:
        self._config = None
        self._store = None
        self._history = None

    def config(self) -> ReconciliationConfig:
        if not self._config:
            self._config = load_config_from_env()
        return self._config

    def store(self) -> CandidateStore:
        if not self._store:
            if os.getenv("LEDGERLINK_STORE_URL"):
                self._store = HttpCandidateStore()
            else:
                self._store = InMemoryCandidateStore()
        return self._store

    def run_history(self) -> RunHistory:
        if not self._history:
            self._history = RunHistory()
        return self._history

    async def aclose(self) -> None:
        if self._store is not None:
            await self._store.aclose()

    def runner(self) -> ReconciliationRunner:
        return ReconciliationRunner(
            store=self.store(),
            config=self.config(),
            history=self.run_history(),
        )


container = ServiceContainer()
