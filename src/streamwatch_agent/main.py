"""
Streamwatch Agent Main Application
==================================

FastAPI entry point for the multi-channel stream detection agent.

Startup wires the store, inference engine, notifier and liveness
checker into a DetectionOrchestrator, which auto-starts every enabled
channel. Shutdown stops every pipeline and reaps every ffmpeg process.

Endpoints:
    GET    /                          - Service information
    GET    /health                    - Liveness probe (is process alive?)
    GET    /ready                     - Readiness probe (orchestrator + model loaded?)
    GET    /status                    - Orchestrator status (monitors + pending)
    GET    /channels/{id}/monitoring  - Monitoring status of one channel
    POST   /channels/{id}/monitoring  - Start monitoring a channel
    DELETE /channels/{id}/monitoring  - Stop monitoring a channel
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from streamwatch_agent.config import Settings, settings as default_settings, setup_logging
from streamwatch_agent.detection import MockInferenceEngine, YoloOnnxEngine
from streamwatch_agent.errors import ConfigurationError, InvalidStreamUrlError
from streamwatch_agent.liveness import TwitchLivenessChecker
from streamwatch_agent.notifier import LoggingNotifier
from streamwatch_agent.orchestrator import DetectionOrchestrator
from streamwatch_agent.stores import MemoryStore, SqliteStore


logger = logging.getLogger(__name__)


# =============================================================================
# Component Factories
# =============================================================================

def create_inference_engine(settings: Settings):
    """
    Create inference engine based on config.

    The YOLO model is loaded later, by DetectionOrchestrator.initialize().
    """
    backend = settings.inference.backend

    if backend == "mock":
        logger.info("Using MockInferenceEngine")
        return MockInferenceEngine()

    if backend == "yolo":
        logger.info(f"Using YoloOnnxEngine: model={settings.inference.model_path}")
        return YoloOnnxEngine(
            model_path=settings.inference.model_path,
            input_size=settings.inference.input_size,
            confidence_threshold=settings.inference.confidence_threshold,
            iou_threshold=settings.inference.iou_threshold,
            inference_timeout=settings.inference.timeout_seconds,
        )

    raise ValueError(f"Unknown inference backend: {backend}")


def create_store(settings: Settings):
    """Create and initialize the channel/config store."""
    backend = settings.store.backend

    if backend == "memory":
        logger.warning("Using in-memory store - configs are lost on restart")
        return MemoryStore()

    if backend == "sqlite":
        store = SqliteStore(settings.store.database_path)
        store.initialize()
        return store

    raise ValueError(f"Unknown store backend: {backend}")


def create_liveness_checker(settings: Settings) -> Optional[TwitchLivenessChecker]:
    if not settings.liveness.enabled:
        return None
    return TwitchLivenessChecker(
        settings.liveness.twitch_client_id,
        settings.liveness.twitch_client_secret,
        cache_ttl_seconds=settings.liveness.cache_ttl_seconds,
        request_timeout=settings.liveness.request_timeout_seconds,
    )


def build_orchestrator(settings: Settings, store=None, notifier=None) -> DetectionOrchestrator:
    """Wire every collaborator into an orchestrator."""
    store = store if store is not None else create_store(settings)
    return DetectionOrchestrator(
        engine=create_inference_engine(settings),
        notifier=notifier or LoggingNotifier(),
        channel_store=store,
        config_store=store,
        liveness=create_liveness_checker(settings),
        pipeline_options={
            "capture_options": settings.capture_options(),
            "rules_ttl_seconds": settings.pipeline.rules_ttl_seconds,
            "default_cooldown_seconds": settings.pipeline.default_cooldown_seconds,
            "default_frame_interval_ms": settings.capture.frame_interval_ms,
            "queue_size": settings.pipeline.queue_size,
        },
        poll_interval_seconds=settings.orchestrator.poll_interval_seconds,
    )


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[DetectionOrchestrator] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (default: loaded from config/env)
        orchestrator: Pre-built orchestrator (tests); built at startup otherwise
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.startup_time = time.time()

        logger.info(
            f"Starting {settings.agent.name} {settings.agent.version}: "
            f"backend={settings.inference.backend}"
        )

        if app.state.orchestrator is None:
            app.state.orchestrator = build_orchestrator(settings)

        await app.state.orchestrator.initialize()
        logger.info("Detection orchestrator started")

        yield

        logger.info("Shutting down gracefully...")
        await app.state.orchestrator.shutdown()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Streamwatch Agent",
        description="Live stream object detection with chat notifications",
        version=settings.agent.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.startup_time = time.time()

    # -------------------------------------------------------------------------
    # HTTP Endpoints
    # -------------------------------------------------------------------------

    @app.get("/")
    async def root() -> JSONResponse:
        """Service information endpoint."""
        return JSONResponse({
            "service": "streamwatch-agent",
            "version": settings.agent.version,
            "name": settings.agent.name,
            "status": "running",
            "inference_backend": settings.inference.backend,
        })

    @app.get("/health")
    async def health() -> JSONResponse:
        """
        Liveness probe - is the process alive?

        Always returns 200 if the service is running.
        """
        return JSONResponse({
            "status": "healthy",
            "uptime_seconds": round(time.time() - app.state.startup_time, 1),
        })

    @app.get("/ready")
    async def ready() -> JSONResponse:
        """
        Readiness probe - is the orchestrator initialized with a loaded model?

        Returns 503 if not ready.
        """
        orch: Optional[DetectionOrchestrator] = app.state.orchestrator
        initialized = orch is not None and orch.is_initialized
        detector_loaded = orch is not None and orch.detector_loaded

        body = {
            "status": "ready" if initialized and detector_loaded else "not_ready",
            "orchestrator_initialized": initialized,
            "detector_loaded": detector_loaded,
        }
        return JSONResponse(body, status_code=200 if body["status"] == "ready" else 503)

    @app.get("/status")
    async def status() -> JSONResponse:
        """Orchestrator-wide status: active monitors and pending channels."""
        orch: DetectionOrchestrator = app.state.orchestrator
        return JSONResponse(orch.get_status().model_dump(mode="json"))

    @app.get("/channels/{channel_id}/monitoring")
    async def get_monitoring(channel_id: int) -> JSONResponse:
        orch: DetectionOrchestrator = app.state.orchestrator
        result = await orch.get_monitoring_status(channel_id)
        return JSONResponse(result.model_dump(mode="json"))

    @app.post("/channels/{channel_id}/monitoring")
    async def start_monitoring(channel_id: int) -> JSONResponse:
        orch: DetectionOrchestrator = app.state.orchestrator
        try:
            await orch.start_monitoring(channel_id)
        except InvalidStreamUrlError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except ConfigurationError as e:
            return JSONResponse({"error": str(e)}, status_code=404)

        result = await orch.get_monitoring_status(channel_id)
        return JSONResponse(result.model_dump(mode="json"))

    @app.delete("/channels/{channel_id}/monitoring")
    async def stop_monitoring(channel_id: int) -> JSONResponse:
        orch: DetectionOrchestrator = app.state.orchestrator
        stopped = await orch.stop_monitoring(channel_id)
        result = await orch.get_monitoring_status(channel_id)
        return JSONResponse({"stopped": stopped, **result.model_dump(mode="json")})

    return app


app = create_app()


# =============================================================================
# Main Entry Point
# =============================================================================

def run() -> None:
    """Console entry point."""
    import uvicorn

    setup_logging(default_settings)

    uvicorn.run(
        "streamwatch_agent.main:app",
        host=default_settings.server.host,
        port=default_settings.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
