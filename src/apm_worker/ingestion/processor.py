"""Transfer loop moving records from the source store to the destination store."""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from apm_worker.errors import SchemaInitError, is_transient_error
from apm_worker.ingestion.reader import SourceReader
from apm_worker.logging import component_logger
from apm_worker.models.record import MetricRecord
from apm_worker.storage.jsonl import append_json_line
from apm_worker.storage.writer import DestinationWriter

logger = logging.getLogger(__name__)
log_event = component_logger("transfer_worker")


@dataclass
class WorkerOptions:
    """Bounds for one worker run. Zero means unbounded for ``timeout`` and ``max_messages``."""

    batch_size: int = 100
    timeout: float = 0
    max_messages: int = 0
    daemon: bool = False
    idle_sleep: float = 1.0
    backoff: float = 5.0


@dataclass
class WorkerStats:
    processed: int = 0
    failed: int = 0
    batches: int = 0
    errors: int = 0
    failed_ids: List[int] = field(default_factory=list)

    @property
    def handled(self) -> int:
        return self.processed + self.failed

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TransferWorker:
    """Drains the source store in batches with at-least-once delivery.

    Records that fail on their own (bad JSON, invalid shape, integrity errors)
    are logged, written to the dead-letter file when one is configured, and
    still marked processed so they cannot wedge the queue. Batch-level failures
    (connectivity) mark nothing and back off before retrying. A schema failure
    stops the worker.
    """

    def __init__(
        self,
        reader: SourceReader,
        writer: DestinationWriter,
        options: Optional[WorkerOptions] = None,
        dead_letter_path: Optional[str] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if options is not None and options.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.reader = reader
        self.writer = writer
        self.options = options or WorkerOptions()
        self.dead_letter_path = dead_letter_path
        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self.last_stats: Optional[WorkerStats] = None
        self.last_error: Optional[str] = None

    def _bound_reached(self, started: float, handled: int) -> bool:
        opts = self.options
        if opts.timeout and self._clock() - started >= opts.timeout:
            logger.info(f"Worker timeout of {opts.timeout}s reached")
            return True
        if opts.max_messages and handled >= opts.max_messages:
            logger.info(f"Worker max messages ({opts.max_messages}) reached")
            return True
        return False

    def _read_limit(self, handled: int) -> int:
        opts = self.options
        if opts.max_messages and not opts.daemon:
            return max(1, min(opts.batch_size, opts.max_messages - handled))
        return opts.batch_size

    def run(self) -> WorkerStats:
        """Run until a bound is hit or the source is drained (or ``stop`` in daemon mode)."""
        opts = self.options
        stats = WorkerStats()
        started = self._clock()
        log_event(
            "worker_started",
            batch_size=opts.batch_size,
            timeout=opts.timeout,
            max_messages=opts.max_messages,
            daemon=opts.daemon,
        )

        while not self._stop_event.is_set():
            if not opts.daemon and self._bound_reached(started, stats.handled):
                break

            try:
                batch = self.reader.read(self._read_limit(stats.handled))
                if not batch:
                    if opts.daemon:
                        self._sleep(opts.idle_sleep)
                        continue
                    logger.info("Source is empty, stopping")
                    break

                ok_ids, failed_ids = self._process_batch(batch)
                self.reader.mark_processed(ok_ids + failed_ids)
            except SchemaInitError:
                logger.error("Destination schema unavailable, stopping worker")
                raise
            except Exception as e:
                stats.errors += 1
                self.last_error = str(e)
                logger.error(f"Batch transfer failed, retrying in {opts.backoff}s: {e}")
                log_event("batch_failed", level=logging.WARNING, error=str(e))
                self._sleep(opts.backoff)
                continue

            stats.batches += 1
            stats.processed += len(ok_ids)
            stats.failed += len(failed_ids)
            stats.failed_ids.extend(failed_ids)
            log_event(
                "batch_committed",
                batch_size=len(batch),
                stored=len(ok_ids),
                failed=len(failed_ids),
            )

            if not opts.daemon and not self.reader.has_more():
                break

        self.last_stats = stats
        log_event("worker_finished", **stats.as_dict())
        return stats

    def _process_batch(self, batch: List[Dict[str, Any]]):
        ok_ids: List[int] = []
        failed_ids: List[int] = []
        for item in batch:
            record_id = item["id"]
            try:
                record = MetricRecord.from_payload(item["metrics_json"])
                self.writer.store(record)
                ok_ids.append(record_id)
            except SchemaInitError:
                raise
            except Exception as e:
                if is_transient_error(e):
                    # Connectivity loss: let the whole batch back off.
                    raise
                logger.error(f"Failed to transfer source record {record_id}: {e}")
                self._dead_letter(item, e)
                failed_ids.append(record_id)
        return ok_ids, failed_ids

    def _dead_letter(self, item: Dict[str, Any], error: Exception):
        if not self.dead_letter_path:
            log_event("record_dropped", level=logging.ERROR, id=item["id"], error=str(error))
            return
        try:
            append_json_line(
                self.dead_letter_path,
                {
                    "id": item["id"],
                    "failed_at": datetime.now(timezone.utc).isoformat(),
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "metrics_json": item["metrics_json"],
                },
            )
            log_event("record_dead_lettered", id=item["id"], path=self.dead_letter_path)
        except Exception as e:
            logger.error(f"Failed to dead-letter source record {item['id']}: {e}")

    def start(self):
        """Run the loop on a background thread (one per worker)."""
        if self._thread and self._thread.is_alive():
            logger.debug("Transfer worker already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_in_thread, name="apm-transfer-worker", daemon=True
        )
        self._thread.start()
        logger.info("Transfer worker thread started")

    def _run_in_thread(self):
        try:
            self.run()
        except Exception as e:
            self.last_error = str(e)
            logger.exception(f"Transfer worker thread stopped: {e}")

    def stop(self, timeout: float = 5.0):
        """Ask the loop to exit at its next bound check and wait for the thread."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())
