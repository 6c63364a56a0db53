"""Main entrypoint for the Cycloud compute rental market API."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from . import auth, bids, resources, users
from .config import Settings, get_settings
from .coordinator import AuctionCoordinator
from .database import create_db_engine, create_session_factory, init_schema
from .errors import install_error_handlers
from .ledger import CreditLedger
from .metrics import setup_metrics
from .registry import AuctionRegistry
from .store import Store
from .streams import StreamManager

console = Console()
log = logging.getLogger("cycloud.market_api")


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def print_banner(settings: Settings):
    console.print(Panel.fit(
        "[bold green]Compute rental market[/bold green]\n"
        f"auction window: {settings.auction_window_seconds:g}s, "
        f"settlement: {settings.settlement_policy.value}",
        title="[bold yellow]Cycloud[/bold yellow]",
        border_style="green",
    ))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Check the schema, resume persisted auctions, and stop them on the way out."""
    log.info("Starting up the API server")
    init_schema(app.state.engine)
    await app.state.coordinator.recover()
    try:
        yield
    finally:
        log.info("Shutting down the API server")
        await app.state.coordinator.shutdown()
        app.state.streams.close_all()
        app.state.engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the market application and its components.

    Args:
        settings: Explicit settings, or None to read them from the environment

    Returns:
        FastAPI: The configured application
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Cycloud Market API",
        description="Auction market for renting compute resources",
        version="0.1.0",
        lifespan=lifespan,
    )

    engine = create_db_engine(settings.database_url)
    store = Store(create_session_factory(engine), page_size=settings.page_size)
    ledger = CreditLedger(store, settings.settlement_policy)
    registry = AuctionRegistry()
    streams = StreamManager(settings.stream_keepalive_seconds)
    coordinator = AuctionCoordinator(
        store,
        ledger,
        registry,
        window_seconds=settings.auction_window_seconds,
        minute_seconds=settings.minute_seconds,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.ledger = ledger
    app.state.registry = registry
    app.state.streams = streams
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)
    setup_metrics(app, settings.environment)

    app.include_router(auth.router, tags=["auth"])
    app.include_router(resources.router, prefix="/resources", tags=["resources"])
    app.include_router(bids.router, prefix="/bids", tags=["bids"])
    app.include_router(users.router, prefix="/users", tags=["users"])

    @app.get("/")
    def read_root():
        return {"message": "Welcome to the Cycloud Market API"}

    @app.get("/health")
    def health_check():
        log.debug("Health check endpoint accessed")
        return {"status": "healthy", "activeAuctions": len(coordinator.active_auctions())}

    @app.get("/streams/stats")
    def stream_stats():
        """Get statistics about open event streams."""
        return streams.get_stream_stats()

    print_banner(settings)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)
