"""Component wiring driven by Settings.

``build_*`` functions construct fresh components from a Settings instance;
``get_*`` functions return lazy process-wide singletons built from the module
settings.
"""

import logging
from typing import Optional

from sqlalchemy.engine import Engine

from apm_worker.collector.collector import Collector
from apm_worker.config import Settings, settings
from apm_worker.ingestion.processor import TransferWorker, WorkerOptions
from apm_worker.ingestion.reader import FileSourceReader, SourceReader, SqlSourceReader
from apm_worker.ingestion.sink import build_source_sink
from apm_worker.query.presenter import QueryEngine
from apm_worker.storage.connection import create_storage_engine
from apm_worker.storage.dialects import dialect_for_backend
from apm_worker.storage.writer import DestinationWriter, FileDestinationWriter, SqlDestinationWriter

logger = logging.getLogger(__name__)

_source_engine: Optional[Engine] = None
_dest_engine: Optional[Engine] = None
_collector: Optional[Collector] = None
_query_engine: Optional[QueryEngine] = None
_transfer_worker: Optional[TransferWorker] = None


def _require_url(url: Optional[str], label: str) -> str:
    if not url:
        raise ValueError(f"{label} must be set for SQL storage backends")
    return url


def build_source_engine(config: Settings) -> Optional[Engine]:
    if config.APM_SOURCE_TYPE == "file":
        return None
    return create_storage_engine(_require_url(config.APM_SOURCE_URL, "APM_SOURCE_URL"))


def build_dest_engine(config: Settings) -> Optional[Engine]:
    if config.APM_DEST_TYPE == "file":
        return None
    return create_storage_engine(_require_url(config.APM_DEST_URL, "APM_DEST_URL"))


def build_collector(config: Settings, engine: Optional[Engine] = None) -> Collector:
    if engine is None:
        engine = build_source_engine(config)
    sink = build_source_sink(
        config.APM_SOURCE_TYPE,
        engine=engine,
        dialect=dialect_for_backend(config.APM_SOURCE_TYPE),
        file_path=config.APM_SOURCE_FILE_PATH,
        table_name=config.APM_SOURCE_TABLE,
    )
    return Collector(
        sink,
        sample_rate=config.APM_SAMPLE_RATE,
        fallback_path=config.APM_FALLBACK_LOG_PATH,
    )


def build_source_reader(config: Settings, engine: Optional[Engine] = None) -> SourceReader:
    if config.APM_SOURCE_TYPE == "file":
        return FileSourceReader(config.APM_SOURCE_FILE_PATH)
    if engine is None:
        engine = build_source_engine(config)
    return SqlSourceReader(engine, table_name=config.APM_SOURCE_TABLE)


def build_destination_writer(config: Settings, engine: Optional[Engine] = None) -> DestinationWriter:
    dialect = dialect_for_backend(config.APM_DEST_TYPE)
    if not dialect.is_sql:
        return FileDestinationWriter(config.APM_DEST_FILE_PATH)
    if engine is None:
        engine = build_dest_engine(config)
    return SqlDestinationWriter(engine, dialect)


def build_query_engine(config: Settings, engine: Optional[Engine] = None) -> QueryEngine:
    dialect = dialect_for_backend(config.APM_DEST_TYPE)
    if not dialect.is_sql:
        raise ValueError("Dashboard queries require a SQL destination (APM_DEST_TYPE)")
    if engine is None:
        engine = build_dest_engine(config)
    return QueryEngine(
        engine,
        dialect,
        mask_ip_addresses=config.APM_MASK_IP_ADDRESSES,
        max_candidates=config.APM_MAX_CANDIDATE_REQUESTS,
    )


def worker_options_from_settings(config: Settings, **overrides) -> WorkerOptions:
    options = WorkerOptions(
        batch_size=config.APM_BATCH_SIZE,
        timeout=config.APM_TIMEOUT,
        max_messages=config.APM_MAX_MESSAGES,
        daemon=config.APM_DAEMON,
        idle_sleep=config.APM_IDLE_SLEEP_SECONDS,
        backoff=config.APM_BACKOFF_SECONDS,
    )
    for name, value in overrides.items():
        if value is not None:
            setattr(options, name, value)
    return options


def build_transfer_worker(
    config: Settings,
    options: Optional[WorkerOptions] = None,
    source_engine: Optional[Engine] = None,
    dest_engine: Optional[Engine] = None,
) -> TransferWorker:
    return TransferWorker(
        build_source_reader(config, engine=source_engine),
        build_destination_writer(config, engine=dest_engine),
        options=options or worker_options_from_settings(config),
        dead_letter_path=config.APM_DEAD_LETTER_PATH,
    )


def get_source_engine() -> Optional[Engine]:
    global _source_engine
    if _source_engine is None and settings.APM_SOURCE_TYPE != "file":
        logger.info(f"Initializing source engine ({settings.APM_SOURCE_TYPE})")
        _source_engine = build_source_engine(settings)
    return _source_engine


def get_dest_engine() -> Optional[Engine]:
    global _dest_engine
    if _dest_engine is None and settings.APM_DEST_TYPE != "file":
        logger.info(f"Initializing destination engine ({settings.APM_DEST_TYPE})")
        _dest_engine = build_dest_engine(settings)
    return _dest_engine


def get_collector() -> Collector:
    global _collector
    if _collector is None:
        _collector = build_collector(settings, engine=get_source_engine())
    return _collector


def get_query_engine() -> QueryEngine:
    global _query_engine
    if _query_engine is None:
        _query_engine = build_query_engine(settings, engine=get_dest_engine())
    return _query_engine


def get_transfer_worker() -> TransferWorker:
    global _transfer_worker
    if _transfer_worker is None:
        _transfer_worker = build_transfer_worker(
            settings, source_engine=get_source_engine(), dest_engine=get_dest_engine()
        )
    return _transfer_worker


def reset_singletons() -> None:
    """Drop cached components (used by tests)."""
    global _source_engine, _dest_engine, _collector, _query_engine, _transfer_worker
    for engine in (_source_engine, _dest_engine):
        if engine is not None:
            engine.dispose()
    _source_engine = None
    _dest_engine = None
    _collector = None
    _query_engine = None
    _transfer_worker = None
