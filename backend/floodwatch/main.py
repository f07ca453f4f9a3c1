import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from floodwatch.config import settings
from floodwatch.database import init_db
from floodwatch.locations.definitions import LOCATIONS
from floodwatch.services import persistence
from floodwatch.services.errors import PolicyImportError
from floodwatch.services.estimators import EstimatorEnsemble
from floodwatch.services.policy_registry import PolicyRegistry

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _restore_policies(registry: PolicyRegistry):
    """Load the newest stored policy snapshot for each known location."""
    for loc in LOCATIONS:
        document = persistence.load_latest_policy(loc.location_id)
        if document is None:
            continue
        try:
            registry.import_policy(loc.location_id, document)
            logger.info("Restored alert policy for %s", loc.location_id)
        except PolicyImportError as e:
            logger.warning("Stored policy for %s rejected: %s", loc.location_id, e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    registry = app.state.registry
    _restore_policies(registry)
    from floodwatch.tasks.scheduler import start_scheduler, stop_scheduler
    start_scheduler(registry)
    yield
    stop_scheduler()
    registry.estimators.shutdown()


app = FastAPI(
    title="FloodWatch",
    description="Flood risk assessment and adaptive alerting for Texas river gauges",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.registry = PolicyRegistry(estimators=EstimatorEnsemble())

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from floodwatch.routers import assessment, estimators, locations, policy  # noqa: E402

app.include_router(locations.router, prefix="/api/v1")
app.include_router(assessment.router, prefix="/api/v1")
app.include_router(policy.router, prefix="/api/v1")
app.include_router(estimators.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok"}
