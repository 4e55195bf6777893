"""
Batch orchestrator.
Drives uploaded rows through fuzzy resolve -> geocode with a fixed pool of
asyncio workers and reports progress frames on a channel.

Guarantees:
  - One row's failure (resolver bug, geocoder timeout, anything) becomes an
    Error record for that row only.
  - Progress frames arrive in completion order; BatchResult.rows is in input
    order, indexed by each row's original position.
  - cancel(), or a connectivity loss seen by the geocoder, stops new rows
    from starting. Rows already in flight finish or time out on their own,
    and everything completed so far is kept and reported.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Optional, Union

from proximity_geo.config import get_settings
from proximity_geo.gazetteer import FuzzyResolver, geocode_query_for
from proximity_geo.geocode import BaseGeocoder
from proximity_geo.models import (
    BatchFinished,
    BatchResult,
    GeocodeFound,
    GeocodeNotFound,
    InputRow,
    MatchResult,
    ProgressEvent,
    ResolvedRow,
    ResolveStatus,
)

logger = logging.getLogger(__name__)

Frame = Union[ProgressEvent, BatchFinished]
# Receives the finished batch, returns a download URL (or None)
Exporter = Callable[[BatchResult], Optional[str]]

CONNECTION_LOST = "Connection lost, stopped before processing all rows"


def _error_row(
    row: InputRow,
    message: str,
    match: Optional[MatchResult] = None,
    query: str = "",
) -> ResolvedRow:
    return ResolvedRow(
        original_columns=row.original_columns,
        place_name=row.place_name,
        fuzzy_match=match,
        query_used=query,
        status=ResolveStatus.ERROR,
        error_message=message,
    )


class BatchOrchestrator:
    """
    One orchestrator per batch. The resolver and geocoder are shared,
    read-only (resolver) or internally pooled (geocoder) collaborators.
    """

    def __init__(
        self,
        resolver: Optional[FuzzyResolver],
        geocoder: BaseGeocoder,
        workers: Optional[int] = None,
        zoom: Optional[int] = None,
        exporter: Optional[Exporter] = None,
    ):
        self.resolver = resolver
        self.geocoder = geocoder
        self.workers = max(1, workers or get_settings().batch.workers)
        self.zoom = zoom
        self.exporter = exporter
        self.stop_reason: Optional[str] = None
        self._stop = asyncio.Event()
        self._connectivity_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    # ── control ──────────────────────────────────────────────────────

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        """Stop starting new rows. In-flight rows are left to finish."""
        if not self._stop.is_set():
            logger.info("Batch stop requested: %s", reason)
            self.stop_reason = reason
            self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def _check_connectivity(self) -> None:
        # Many workers can fail at once on an outage; check once
        async with self._connectivity_lock:
            if self.stopped:
                return
            if not await self.geocoder.check_connectivity():
                self.cancel(CONNECTION_LOST)

    # ── per row ──────────────────────────────────────────────────────

    def _resolve(self, place: str) -> Optional[MatchResult]:
        """Best effort: a resolver failure falls back to the raw name."""
        if self.resolver is None:
            return None
        try:
            return self.resolver.resolve(place)
        except Exception as e:
            logger.warning("Fuzzy resolve failed for '%s', using raw name: %s", place, e)
            return None

    async def process_row(self, row: InputRow) -> ResolvedRow:
        place = row.place_name.strip()
        if not place:
            return _error_row(row, "No area name")

        match = self._resolve(place)
        query = geocode_query_for(match, place)
        outcome = await self.geocoder.geocode(query, self.zoom)

        if isinstance(outcome, GeocodeFound):
            return ResolvedRow(
                original_columns=row.original_columns,
                place_name=row.place_name,
                fuzzy_match=match,
                query_used=query,
                status=ResolveStatus.SUCCESS,
                latitude=outcome.latitude,
                longitude=outcome.longitude,
                zoom=outcome.zoom,
                resolved_label=outcome.resolved_label,
                source_url=outcome.source_url,
            )

        if isinstance(outcome, GeocodeNotFound):
            return _error_row(row, f"Coordinates not found for '{query}'", match, query)

        if outcome.connection_failure:
            await self._check_connectivity()
        return _error_row(row, outcome.message, match, query)

    # ── batch ────────────────────────────────────────────────────────

    async def run(
        self,
        rows: list[InputRow],
        channel: Optional[asyncio.Queue] = None,
    ) -> BatchResult:
        """
        Process every row; push a ProgressEvent per completed row and a final
        BatchFinished onto `channel` if given. Returns the input-ordered result.
        """
        total = len(rows)
        results: list[Optional[ResolvedRow]] = [None] * total
        pending: asyncio.Queue[tuple[int, InputRow]] = asyncio.Queue()
        for position, row in enumerate(rows):
            pending.put_nowait((position, row))

        completed = 0
        start_time = time.monotonic()
        pool_size = min(self.workers, total)
        logger.info("=== Batch start: %d rows, %d workers ===", total, pool_size)

        def emit(frame: Frame) -> None:
            if channel is not None:
                channel.put_nowait(frame)

        async def worker(worker_id: int) -> None:
            nonlocal completed
            while not self.stopped:
                try:
                    position, row = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    record = await self.process_row(row)
                except Exception as e:
                    logger.error("Worker %d: row %d failed: %s", worker_id, position, e, exc_info=True)
                    record = _error_row(row, str(e) or e.__class__.__name__)

                results[position] = record
                completed += 1
                logger.debug("Row %d/%d done (%s): %s", completed, total, record.status.value, row.place_name)
                emit(ProgressEvent(index=completed, total=total, row=record, position=position))

        result: Optional[BatchResult] = None
        try:
            await asyncio.gather(*(worker(i) for i in range(pool_size)))

            result = BatchResult(rows=results, stopped_early=completed < total)
            if self.exporter is not None and completed:
                result = result.model_copy(update={"download_url": await self._export(result)})
        finally:
            succeeded = sum(1 for r in results if r is not None and r.succeeded)
            elapsed = time.monotonic() - start_time
            emit(BatchFinished(
                processed=completed,
                total=total,
                succeeded=succeeded,
                failed=completed - succeeded,
                stopped_early=completed < total,
                download_url=result.download_url if result is not None else None,
                message=self.stop_reason if completed < total else None,
            ))
            logger.info("=== Batch finished in %.1fs: %d/%d processed, %d succeeded%s ===",
                        elapsed, completed, total, succeeded,
                        " (stopped early)" if completed < total else "")

        return result

    async def _export(self, result: BatchResult) -> Optional[str]:
        # Export failure must not discard the rows already produced
        try:
            return await asyncio.to_thread(self.exporter, result)
        except Exception as e:
            logger.error("Batch export failed: %s", e, exc_info=True)
            return None

    async def stream(self, rows: list[InputRow]) -> AsyncIterator[Frame]:
        """
        Yield frames as rows complete, ending with BatchFinished.
        If the consumer goes away early, the batch is cancelled (no new rows)
        and in-flight rows are left to finish in the background.
        """
        channel: asyncio.Queue[Frame] = asyncio.Queue()
        task = asyncio.create_task(self.run(rows, channel))
        # Held so an abandoned batch is not garbage collected mid-flight
        self._task = task
        try:
            while True:
                frame = await channel.get()
                yield frame
                if isinstance(frame, BatchFinished):
                    break
            await task
        finally:
            if not task.done():
                self.cancel("Client disconnected")
