import os

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.logging import configure_logging, get_logger, get_trace_id
from .core.metrics import record_http_request
from .core.middleware import TraceIDMiddleware
from .routes import coach, health, llm, metrics
from .services.crm.dataset import get_crm_dataset
from .services.crm.knowledge import get_knowledge_base
from .services.llm.config_store import get_config_store
from .services.llm.on_device import get_on_device_engine

load_dotenv()

# JSON output in production (containerized), console output in development
log_level = os.getenv("LOG_LEVEL", "INFO")
json_output = os.getenv("LOG_JSON", "true").lower() == "true"
configure_logging(log_level=log_level, json_output=json_output)

logger = get_logger(__name__)

app = FastAPI(
    title="ARIA Coach API",
    description="AI coach for pharmaceutical field representatives",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)


@app.on_event("startup")
async def startup_event():
    """Load the CRM dataset and knowledge base, and report the LLM setup."""
    logger.info("app_startup_started")

    dataset = get_crm_dataset()
    knowledge = get_knowledge_base()
    config = get_config_store().load()
    logger.info(
        "app_startup_data_ready",
        practitioners=len(dataset.all_practitioners()),
        knowledge_passages=len(knowledge),
    )
    if config is None:
        logger.info(
            "app_startup_no_llm_config",
            message="No provider configured. Questions go to the local LLM server first.",
        )
    else:
        logger.info("app_startup_llm_configured", provider=config.provider, model=config.model)

    engine = get_on_device_engine()
    if os.getenv("ON_DEVICE_PRELOAD", "false").lower() == "true" and engine.is_supported():
        # Loading can take minutes on first download; do not block startup on it.
        app.state.on_device_preload = engine.preload()

    logger.info("app_startup_completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Release the on-device model."""
    logger.info("app_shutdown_started")
    await get_on_device_engine().unload()
    logger.info("app_shutdown_completed")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    import time
    start_time = getattr(request.state, "start_time", time.time())
    duration = time.time() - start_time
    trace_id = get_trace_id()

    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=exc.status_code,
        duration_seconds=duration,
    )

    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    response = JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "status_code": exc.status_code,
            "trace_id": trace_id,
        }
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    trace_id = get_trace_id()
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    response = JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "status_code": 500,
            "trace_id": trace_id,
        }
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(coach.router, prefix="/coach", tags=["Coach"])
app.include_router(llm.router, prefix="/llm", tags=["LLM"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
