"""
Batch processor: refresh market data and analytics for one user's instruments.

Batches run one after another with a pause in between; symbols inside a batch
run sequentially too. A failing symbol is logged and skipped.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from django.conf import settings
from django.db import transaction

from adapters import MarketDataProtocol
from core.metrics import BATCH_SYMBOL_FAILURES
from core.models import Instrument
from marketdata.analytics import AnalyticsProvider
from marketdata.ingest import store_hourly_bars
from scheduling.logbook import Category, Level, SchedulingLogbook
from scheduling.status import ProcessStatusTracker, progress_percent

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    total: int = 0
    processed: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    analyzed: list[str] = field(default_factory=list)
    bars_stored: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.failed) and bool(self.succeeded)

    def as_details(self) -> dict[str, Any]:
        return {
            "succeeded": len(self.succeeded),
            "failedSymbols": sorted(self.failed),
            "failedDetails": self.failed,
            "analyzed": len(self.analyzed),
            "barsStored": self.bars_stored,
        }


def _error_details(exc: Exception) -> dict[str, Any]:
    details = getattr(exc, "details", None)
    return details if isinstance(details, dict) else {}


def chunked(items: Sequence[Any], size: int) -> list[list[Any]]:
    size = max(1, int(size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class BatchProcessor:
    def __init__(
        self,
        client: MarketDataProtocol,
        tracker: ProcessStatusTracker,
        logbook: SchedulingLogbook,
        analytics: Optional[AnalyticsProvider] = None,
        batch_size: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.tracker = tracker
        self.logbook = logbook
        self.analytics = analytics
        self.batch_size = max(1, int(batch_size or getattr(settings, "SCHEDULING_BATCH_SIZE", 5)))
        if delay_seconds is None:
            delay_seconds = float(getattr(settings, "SCHEDULING_BATCH_DELAY_SECONDS", 1.0))
        self.delay_seconds = max(0.0, float(delay_seconds))
        self.sleep = sleep

    def run(
        self,
        process_id: str,
        owner,
        instruments: Sequence[Instrument],
        fetch_limit: int = 24,
        analyze: bool = False,
    ) -> BatchReport:
        batches = chunked(instruments, self.batch_size)
        report = BatchReport(total=len(instruments))
        self.logbook.info(
            process_id,
            "BATCH_PROCESSING_START",
            f"Processing {len(instruments)} instruments in {len(batches)} batches of {self.batch_size}",
            owner=owner,
            category=Category.DATA_PROCESSING,
            details={"total": len(instruments), "batches": len(batches), "batchSize": self.batch_size},
        )

        for index, batch in enumerate(batches, start=1):
            fetched: list[Instrument] = []
            for inst in batch:
                if self._fetch_one(process_id, owner, inst, fetch_limit, report):
                    fetched.append(inst)

            if analyze and self.analytics is not None and fetched:
                try:
                    snapshots = self.analytics.analyze_batch(fetched)
                    report.analyzed.extend(sorted(snapshots))
                except Exception as exc:
                    self.logbook.error(
                        process_id,
                        "BATCH_ANALYSIS_ERROR",
                        f"Analytics failed for batch {index}: {exc}",
                        owner=owner,
                        category=Category.ANALYSIS,
                        details={"batch": index, "symbols": [i.symbol for i in fetched]},
                    )

            report.processed += len(batch)
            pct = progress_percent(report.processed, report.total)
            self.tracker.advance(
                process_id,
                len(batch),
                {"lastBatch": index, "batches": len(batches), "failedSymbols": sorted(report.failed)},
            )
            self.logbook.info(
                process_id,
                "BATCH_COMPLETE",
                f"Batch {index}/{len(batches)} done ({pct}%)",
                owner=owner,
                category=Category.DATA_PROCESSING,
                details={
                    "batch": index,
                    "processed": report.processed,
                    "total": report.total,
                    "percent": pct,
                },
            )
            if index < len(batches) and self.delay_seconds:
                self.sleep(self.delay_seconds)

        return report

    def _fetch_one(self, process_id: str, owner, inst: Instrument, limit: int, report: BatchReport) -> bool:
        started = time.monotonic()
        self.logbook.log(
            process_id,
            "API_FETCH_START",
            f"Fetching {limit} hourly bars",
            owner=owner,
            level=Level.DEBUG,
            category=Category.API_CALL,
            symbol=inst.symbol,
        )
        try:
            bars = self.client.fetch_hourly(inst.symbol, limit)
            with transaction.atomic():
                stored = store_hourly_bars(inst, bars)
        except Exception as exc:
            BATCH_SYMBOL_FAILURES.inc()
            report.failed[inst.symbol] = str(exc)
            self.logbook.error(
                process_id,
                "API_FETCH_ERROR",
                f"{inst.symbol}: {exc}",
                owner=owner,
                category=Category.API_CALL,
                symbol=inst.symbol,
                details={"error_type": type(exc).__name__, **_error_details(exc)},
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return False
        report.succeeded.append(inst.symbol)
        report.bars_stored += stored
        self.logbook.info(
            process_id,
            "DATA_STORAGE_COMPLETE",
            f"Stored {stored} bars",
            owner=owner,
            category=Category.DATA_PROCESSING,
            symbol=inst.symbol,
            details={"count": stored},
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return True
