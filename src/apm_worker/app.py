import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from inspect import isawaitable
from typing import Any, Callable, List

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from apm_worker.config import settings
from apm_worker.factory import get_dest_engine, get_query_engine, get_transfer_worker
from apm_worker.models.api import (
    DashboardResponse,
    EventOperator,
    RequestDetail,
    RequestsResponse,
)
from apm_worker.query.aggregations import threshold_for_range
from apm_worker.query.filters import EVENT_OPERATORS, RequestFilters
from apm_worker.query.presenter import QueryEngine
from apm_worker.storage.schema import ensure_schema

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RANGE_PATTERN = "^(last_hour|last_day|last_week)$"


@dataclass
class ApiLifecycleState:
    """In-memory startup status reported by /healthz."""

    ready: bool = False
    degraded: bool = False
    worker_running: bool = False
    started_components: List[str] = field(default_factory=list)
    startup_errors: List[str] = field(default_factory=list)

    def reset(self) -> None:
        self.ready = False
        self.degraded = False
        self.worker_running = False
        self.started_components = []
        self.startup_errors = []


lifecycle_state = ApiLifecycleState()


async def _run_component_step(component_name: str, action: Callable[[], Any]) -> bool:
    """Run a startup action; failures degrade the API instead of aborting it."""
    try:
        result = action()
        if isawaitable(result):
            await result
        return True
    except Exception as exc:
        message = f"{component_name} failed: {exc}"
        logger.exception(message)
        lifecycle_state.startup_errors.append(message)
        lifecycle_state.degraded = True
        return False


def _ensure_destination_schema():
    engine = get_dest_engine()
    if engine is not None:
        ensure_schema(engine)


def _start_in_process_worker():
    worker = get_transfer_worker()
    # An embedded worker polls for the lifetime of the API process.
    worker.options.daemon = True
    worker.start()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Prepare the destination schema and optionally run the transfer worker in-process."""
    lifecycle_state.reset()

    startup_plan = [("storage.ensure_schema", _ensure_destination_schema)]
    if settings.APM_RUN_WORKER_IN_PROCESS:
        startup_plan.append(("ingestion.transfer_worker.start", _start_in_process_worker))

    for component_name, action in startup_plan:
        if await _run_component_step(component_name, action):
            lifecycle_state.started_components.append(component_name)

    lifecycle_state.worker_running = (
        "ingestion.transfer_worker.start" in lifecycle_state.started_components
    )
    lifecycle_state.ready = not lifecycle_state.startup_errors
    if lifecycle_state.degraded:
        logger.warning(
            "APM API started in degraded mode. started_components=%s startup_errors=%s",
            lifecycle_state.started_components,
            lifecycle_state.startup_errors,
        )

    yield

    if lifecycle_state.worker_running:
        try:
            get_transfer_worker().stop()
        except Exception as exc:
            logger.exception("Transfer worker shutdown failed: %s", exc)


app = FastAPI(title="APM Metrics API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8080",
        "http://127.0.0.1:8080",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _query_engine() -> QueryEngine:
    try:
        return get_query_engine()
    except ValueError as e:
        logger.error(f"Query engine unavailable: {e}")
        raise HTTPException(status_code=503, detail=str(e))


# --- Query API ---


@app.get("/api/v1/dashboard", response_model=DashboardResponse)
def api_dashboard(range_name: str = Query("last_hour", alias="range", pattern=RANGE_PATTERN)):
    """Dashboard aggregates for the selected range."""
    engine = _query_engine()
    try:
        return engine.get_dashboard_data(threshold_for_range(range_name), range_name)
    except Exception as e:
        logger.error(f"Error computing dashboard data: {e}")
        raise HTTPException(status_code=500, detail="Failed to compute dashboard data")


@app.get("/api/v1/requests", response_model=RequestsResponse)
def api_list_requests(
    request: Request,
    range_name: str = Query("last_hour", alias="range", pattern=RANGE_PATTERN),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """Filtered, paginated request search.

    Filters are read from the query string: request_id, url, response_code,
    response_code_prefix, is_bot, min_time (ms), ip, host, session_id,
    user_agent, custom_event_type and event_keys (JSON list of
    ``{key, operator, value}``).
    """
    engine = _query_engine()
    filters = RequestFilters.from_query_params(request.query_params)
    try:
        return engine.get_requests_data(
            threshold_for_range(range_name), page, per_page, filters=filters, range_name=range_name
        )
    except Exception as e:
        logger.error(f"Error listing requests: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch requests")


@app.get("/api/v1/requests/{request_id}", response_model=RequestDetail)
def api_get_request(request_id: int):
    """Fetch a request with all of its child collections."""
    details = _query_engine().get_request_details(request_id)
    if details is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return details


@app.get("/api/v1/event-keys", response_model=List[str])
def api_event_keys(range_name: str = Query("last_hour", alias="range", pattern=RANGE_PATTERN)):
    """Distinct custom event keys seen in the range."""
    return _query_engine().get_event_keys(threshold_for_range(range_name))


@app.get("/api/v1/event-operators", response_model=List[EventOperator])
def api_event_operators():
    # Static list; served even when the destination has no query engine.
    return [dict(op) for op in EVENT_OPERATORS]


@app.get("/healthz")
def healthz():
    """Health check endpoint."""
    status_value = "degraded" if lifecycle_state.degraded else "ok"
    return {
        "status": status_value,
        "ready": bool(lifecycle_state.ready),
        "worker_running": bool(lifecycle_state.worker_running),
        "components_started": lifecycle_state.started_components[:16],
        "startup_errors": lifecycle_state.startup_errors[:8],
    }
