"""
Batch driver: bind one snapshot, fan articles out over a worker pool.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional

from geodisambig.domain.errors import DisambiguationCancelled, GazetteerUnavailable
from geodisambig.domain.models import DisambiguationResult, Mention
from geodisambig.services.backfill import BackfillQueue
from geodisambig.services.disambiguation import DisambiguationService
from geodisambig.services.gazetteer_store import GazetteerStore, SnapshotGazetteerStore
from geodisambig.settings import Settings

logger = logging.getLogger(__name__)

StoreFactory = Callable[[str, Settings], GazetteerStore]


class BatchStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class BatchOutcome:
    status: BatchStatus
    results: Dict[str, List[DisambiguationResult]] = field(default_factory=dict)
    failed_articles: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    snapshot_version: Optional[str] = None
    stats: Dict[str, int] = field(default_factory=dict)


def _open_snapshot_store(snapshot_dir: str, settings: Settings) -> GazetteerStore:
    return SnapshotGazetteerStore.open_current(snapshot_dir, settings)


class BatchRunner:
    """
    Runs disambiguation for many articles against a single bound snapshot.

    The store is bound once per run() before any article is touched, so a
    snapshot published mid-batch only affects the next batch. A runner that
    has been cancelled stays cancelled.
    """

    def __init__(
        self,
        snapshot_dir: Optional[Path | str] = None,
        settings: Optional[Settings] = None,
        store_factory: StoreFactory = _open_snapshot_store,
        backfill: Optional[BackfillQueue] = None,
        publisher_priors: Optional[Mapping[str, FrozenSet[str]]] = None,
    ):
        self.settings = settings or Settings()
        self.snapshot_dir = str(snapshot_dir or self.settings.SNAPSHOT_DIR)
        self.store_factory = store_factory
        self.publisher_priors = publisher_priors
        if backfill is None and self.settings.fallback_enabled:
            backfill = BackfillQueue.from_settings(self.settings)
        self.backfill = backfill
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop queued articles; running ones stop at the next mention boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def close(self) -> None:
        """Stop the backfill worker started by run()."""
        if self.backfill is not None:
            self.backfill.stop()

    def __enter__(self) -> "BatchRunner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run(self, articles: Mapping[str, List[Mention]]) -> BatchOutcome:
        try:
            store = self.store_factory(self.snapshot_dir, self.settings)
        except GazetteerUnavailable as exc:
            logger.error("Batch failed: gazetteer unavailable: %s", exc)
            return BatchOutcome(status=BatchStatus.FAILED, error=str(exc))

        if self.backfill is not None:
            self.backfill.start()
        service = DisambiguationService(
            store,
            self.settings,
            publisher_priors=self.publisher_priors,
            backfill=self.backfill,
        )

        results: Dict[str, List[DisambiguationResult]] = {}
        failed: Dict[str, str] = {}
        cancelled = False
        workers = max(1, self.settings.WORKER_COUNT)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="disambig") as pool:
            futures = {
                pool.submit(service.disambiguate, list(articles[article_id]), self._cancel): article_id
                for article_id in sorted(articles)
            }
            for future in as_completed(futures):
                article_id = futures[future]
                try:
                    results[article_id] = future.result()
                except (DisambiguationCancelled, CancelledError):
                    cancelled = True
                except Exception as exc:
                    logger.exception("Article %s failed", article_id)
                    failed[article_id] = f"{type(exc).__name__}: {exc}"
                if self._cancel.is_set():
                    cancelled = True
                    for pending in futures:
                        pending.cancel()

        ordered = {article_id: results[article_id] for article_id in sorted(results)}
        all_results = [r for rs in ordered.values() for r in rs]
        stats = {
            "articles": len(articles),
            "processed": len(ordered),
            "failed": len(failed),
            "mentions": len(all_results),
            "resolved": sum(1 for r in all_results if r.is_resolved),
            "degraded": sum(1 for r in all_results if r.degraded),
        }
        status = BatchStatus.CANCELLED if cancelled else BatchStatus.COMPLETED
        logger.info(
            "Batch %s on snapshot %s: %d/%d articles, %d failed, %d degraded mention(s)",
            status.value,
            store.version,
            stats["processed"],
            stats["articles"],
            stats["failed"],
            stats["degraded"],
        )
        return BatchOutcome(
            status=status,
            results=ordered,
            failed_articles=failed,
            snapshot_version=store.version,
            stats=stats,
        )
