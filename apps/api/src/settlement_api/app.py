from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from settlement_api.core.settings import settings
from settlement_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import MaintenanceJobScheduler
from .services.payments import SettlementEngine, build_engine
from .workers import PaymentReconciliationWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def _schedule_path() -> Path:
    schedule_path = Path(settings.maintenance_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine: SettlementEngine = getattr(app.state, "settlement_engine", None) or build_engine(
        settings, _session_factory
    )
    reconciliation_worker = PaymentReconciliationWorker(
        session_factory=engine.session_factory,
        engine=engine,
        interval_seconds=settings.reconciliation_interval_seconds,
        trigger_label=settings.reconciliation_trigger_label,
    )
    schedule_path = _schedule_path()
    scheduler = MaintenanceJobScheduler(
        config_path=schedule_path,
        context={"session_factory": engine.session_factory, "engine": engine},
    )

    app.state.settlement_engine = engine
    app.state.payment_reconciliation_worker = reconciliation_worker
    app.state.maintenance_scheduler = scheduler

    await engine.start()

    reconciliation_enabled = settings.reconciliation_worker_enabled
    if reconciliation_enabled:
        reconciliation_worker.start()
    else:
        logger.info(
            "Payment reconciliation worker disabled",
            reason="reconciliation_worker_enabled is false",
        )

    scheduler_enabled = settings.maintenance_scheduler_enabled
    if scheduler_enabled:
        try:
            scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Maintenance scheduler failed to start", error=str(exc))
        else:
            logger.info("Maintenance scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info(
            "Maintenance scheduler disabled",
            reason="maintenance_scheduler_enabled is false",
        )

    try:
        yield
    finally:
        if reconciliation_enabled and reconciliation_worker.is_running:
            await reconciliation_worker.stop()
        if scheduler_enabled and scheduler.is_running:
            await scheduler.stop()
        await engine.stop()


def create_app(engine: SettlementEngine | None = None) -> FastAPI:
    """Application factory for the settlement service.

    ``engine`` replaces the one built from settings, which is how tests
    inject fake gateways and collaborators.
    """
    configure_logging(
        service_name="settlement-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Settlement API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if engine is not None:
        app.state.settlement_engine = engine

    configure_tracing(
        app,
        service_name="settlement-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
