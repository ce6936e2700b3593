"""Multi-cycle run driver.

One session holds the state-directory lock for its whole lifetime:
  lock → load or initialize context → apply override → load cache
  → run cycles (saving context and cache after each) → release

A session that keeps cycling without progress is stopped with
StalledRunError rather than burning budget.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from src.core.exceptions import StalledRunError
from src.core.models import CycleContext, CycleReport, NextActionType
from src.llm.token_tracker import CostLedger
from src.memory.context_store import ContextStore
from src.memory.shared_cache import SharedMemoryCache
from src.orchestrator.cycle import CycleController

if TYPE_CHECKING:
    from src.core.factory import ComponentBundle

_LOGGER_NAME = "conclave.orchestrator.session"


class RunSession:
    """Runs up to max_cycles cycles against one state directory.

    Injected dependencies:
        controller: Runs a single cycle.
        store: Context persistence, override records and the run lock.
        cache: Shared memory cache, snapshotted next to the context.
        ledger: Optional cost ledger, told which run each call belongs to.
        stall_cycle_limit: Consecutive no-progress cycles tolerated.
    """

    def __init__(
        self,
        controller: CycleController,
        store: ContextStore,
        cache: SharedMemoryCache,
        ledger: Optional[CostLedger] = None,
        stall_cycle_limit: int = 3,
        logger: Optional[logging.Logger] = None,
    ):
        self.controller = controller
        self.store = store
        self.cache = cache
        self.ledger = ledger
        self.stall_cycle_limit = stall_cycle_limit
        self.logger = logger or logging.getLogger(_LOGGER_NAME)
        self.context: Optional[CycleContext] = None
        self.reports: list[CycleReport] = []

    @classmethod
    def from_bundle(cls, bundle: "ComponentBundle") -> "RunSession":
        return cls(
            controller=bundle.controller,
            store=bundle.store,
            cache=bundle.cache,
            ledger=bundle.ledger,
            stall_cycle_limit=bundle.config.orchestrator.stall_cycle_limit,
        )

    @property
    def roster(self) -> list[str]:
        return self.controller.roster

    def run(self, max_cycles: int = 1) -> list[CycleReport]:
        """Run cycles until completion, max_cycles, or a stall.

        Returns the reports of every cycle that finished.

        Raises:
            StalledRunError: stall_cycle_limit consecutive cycles made no
                progress, or every cycle of a shorter run made none.
            ConcurrentRunError: Another process holds the state directory.
            ContextStoreError: Corrupt snapshot or override record.
            FatalError, CircuitOpenError: From the cycle in progress; the
                context is saved first.
        """
        if max_cycles < 1:
            raise ValueError("max_cycles must be at least 1")

        self.reports = []
        with self.store.lock():
            context = self.store.load_or_initialize(self.roster)
            if self.store.apply_override(context, self.roster):
                # Persist immediately so a crash in the first cycle keeps the override.
                context = self.store.save(context)
            loaded = self.cache.load(self.store.cache_path)
            if loaded:
                self.logger.info("Restored %d shared-memory entries", loaded)

            self.context = context
            no_progress = 0
            for _ in range(max_cycles):
                if context.next_action.type == NextActionType.COMPLETE:
                    self.logger.info("Run already complete (%s)", context.next_action.reason)
                    break

                if self.ledger is not None:
                    self.ledger.set_run(context.run_number)
                try:
                    report = self.controller.run_cycle(context)
                finally:
                    context = self._persist(context)
                self.reports.append(report)

                if report.made_progress:
                    no_progress = 0
                else:
                    no_progress += 1
                    self.logger.warning(
                        "Run #%d made no progress (%d consecutive)", report.run_number, no_progress,
                    )
                    if no_progress >= self.stall_cycle_limit:
                        raise StalledRunError(no_progress)

            if self.reports and no_progress == len(self.reports) and len(self.reports) == max_cycles:
                raise StalledRunError(no_progress)
        return self.reports

    def _persist(self, context: CycleContext) -> CycleContext:
        saved = self.store.save(context)
        self.cache.purge_expired()
        self.cache.save(self.store.cache_path)
        self.context = saved
        return saved
