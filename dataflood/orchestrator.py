from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
import logging
import time

from dataflood.connectors.base import Connector, MappingError
from dataflood.schemas import IngestionRunResult, Partition
from dataflood.sink import UpsertSink
from dataflood.store import Store


logger = logging.getLogger(__name__)

MAINTENANCE_PROCEDURES = ("sync_entity_stats", "discover_relationships", "generate_insights")


class IngestionOrchestrator:
    """Fans ingestion out over (source, partition) units and settles every one of them.

    A unit failure is recorded against its source and never reaches the caller;
    the only exception that escapes ``run`` is ``StoreUnavailableError`` when the
    store cannot be reached before any work starts.
    """

    def __init__(self, store: Store, *, max_concurrency: int = 12, run_maintenance: bool = True) -> None:
        self.store = store
        self.sink = UpsertSink(store)
        self.max_concurrency = max_concurrency
        self.run_maintenance = run_maintenance

    def run(
        self,
        connectors: Sequence[Connector],
        partition_plan: Iterable[Partition] | None = None,
    ) -> IngestionRunResult:
        started = time.monotonic()
        self.store.ping()

        result = IngestionRunResult()
        active: dict[str, Connector] = {}
        for connector in connectors:
            result.outcome(connector.source_id)
            credential = connector.descriptor.credential
            if credential and not connector.api_key:
                # Configuration error: skip the whole source for this run.
                logger.warning("source skipped, missing credential", extra={"source": connector.source_id, "credential": credential})
                result.mark_skipped(connector.source_id, f"skipped: missing credential {credential}")
                continue
            active[connector.source_id] = connector

        units = self._plan_units(active, connectors, partition_plan)
        logger.info("ingestion started", extra={"sources": len(active), "units": len(units)})

        if units:
            with ThreadPoolExecutor(max_workers=max(1, min(self.max_concurrency, len(units)))) as executor:
                futures = {
                    executor.submit(self._run_unit, active[partition.source_id], partition, result): partition
                    for partition in units
                }
                wait(futures)
                for future, partition in futures.items():
                    exc = future.exception()
                    if exc is not None:
                        logger.error("ingestion unit crashed", exc_info=exc, extra={"source": partition.source_id})
                        result.record_error(partition.source_id, f"[{partition.key}] {exc}")

        if self.run_maintenance:
            self._run_maintenance(result)

        result.duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            "ingestion finished",
            extra={
                "total_loaded": result.total_loaded,
                "total_new": result.total_new,
                "errors": len(result.errors),
                "duration_ms": round(result.duration_ms, 1),
            },
        )
        return result

    def _plan_units(
        self,
        active: dict[str, Connector],
        connectors: Sequence[Connector],
        partition_plan: Iterable[Partition] | None,
    ) -> list[Partition]:
        if partition_plan is None:
            planned = [partition for connector in active.values() for partition in connector.partitions()]
        else:
            planned = [partition for partition in partition_plan if partition.source_id in active]

        source_order = {connector.source_id: index for index, connector in enumerate(connectors)}
        # Priority decides submission order only.
        return sorted(planned, key=lambda partition: (partition.priority, source_order.get(partition.source_id, 0)))

    def _run_unit(self, connector: Connector, partition: Partition, result: IngestionRunResult) -> None:
        source_id = connector.source_id
        cursor: int | None = None
        pages = 0
        try:
            while True:
                page = connector.fetch(partition, cursor)
                pages += 1
                for raw in page.records:
                    try:
                        record = connector.to_canonical(raw)
                    except MappingError as exc:
                        logger.info("record dropped", extra={"source": source_id, "partition": partition.key, "reason": str(exc)})
                        result.record_dropped(source_id)
                        continue
                    result.record_upsert(source_id, self.sink.apply(record))

                if page.next_cursor is None or pages >= connector.descriptor.max_pages:
                    break
                cursor = page.next_cursor
        except Exception as exc:
            # Abandon the rest of this partition; the next run picks it up again.
            logger.warning(
                "ingestion unit failed",
                extra={"source": source_id, "partition": partition.key, "pages": pages, "error": str(exc)},
            )
            result.record_error(source_id, f"[{partition.key}] {type(exc).__name__}: {exc}")

    def _run_maintenance(self, result: IngestionRunResult) -> None:
        for name in MAINTENANCE_PROCEDURES:
            try:
                self.store.call_procedure(name)
                result.maintenance[name] = "ok"
            except Exception as exc:
                logger.warning("maintenance call failed", extra={"procedure": name, "error": str(exc)})
                result.maintenance[name] = f"failed: {exc}"
