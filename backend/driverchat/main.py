"""Driver chat operations API."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from driverchat.core.config import get_settings
from driverchat.core.logging import configure_logging, logger
from driverchat.routers import deliveries, fleet, journey, routes, webhook


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Driver chat API starting",
        version="0.1.0",
        app_mode=settings.normalized_app_mode(),
        llm_model=settings.llm_model,
        messaging_provider=settings.default_messaging_provider,
    )
    yield
    logger.info("Driver chat API shutting down")


app = FastAPI(
    title="Driver Chat API",
    description="Chat-driven route, delivery and shift tracking for delivery fleets",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(journey.router)
app.include_router(routes.router)
app.include_router(deliveries.router)
app.include_router(fleet.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Driver Chat API",
        "version": "0.1.0",
        "endpoints": {
            "webhook": "/webhook",
            "journey": "/journey",
            "routes": "/routes",
            "deliveries": "/deliveries",
            "fleet": "/fleet",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
