"""Composition root: wires the components into a FastAPI app."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .api import create_api_router, envelope
from .config import Settings
from .errors import (
    AuthenticationError,
    BrokerError,
    ChainAssemblyError,
    InvalidExpiryError,
    InvalidTOTPError,
    OptionDeskError,
    ScripMasterUnavailableError,
)
from .logging_config import setup_logging
from .market import (
    BroadcastScheduler,
    ChainAssembler,
    MarketService,
    ScripMasterCache,
    SubscriberHub,
    TokenResolver,
    TTLCache,
    create_market_gateway,
    create_stream_router,
)
from .market.store import InstrumentStore, KeyValueStore, open_database

logger = logging.getLogger(__name__)

# Most specific class wins (handlers are looked up along the MRO)
_ERROR_STATUS: dict[type[Exception], int] = {
    InvalidExpiryError: 400,
    InvalidTOTPError: 400,
    AuthenticationError: 401,
    BrokerError: 502,
    ChainAssemblyError: 502,
    ScripMasterUnavailableError: 503,
    OptionDeskError: 500,
}


def _install_error_handlers(app: FastAPI) -> None:
    for exc_type, status_code in _ERROR_STATUS.items():

        async def handler(request: Request, exc: Exception, status_code: int = status_code):
            if status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            return JSONResponse(envelope(message=str(exc), status=False), status_code=status_code)

        app.add_exception_handler(exc_type, handler)

    async def validation_handler(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(envelope(message=errors, status=False), status_code=400)

    app.add_exception_handler(RequestValidationError, validation_handler)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the app. Components are created here; the lifespan starts and stops them."""
    settings = settings or Settings.from_env()

    conn = open_database(settings.db_path)
    gateway = create_market_gateway(settings, token_store=KeyValueStore(conn))
    scrip_master = ScripMasterCache(gateway.fetch_instruments, ttl=settings.scrip_master_ttl)
    resolver = TokenResolver(scrip_master, settings.underlying)
    assembler = ChainAssembler(
        gateway,
        resolver,
        spot_exchange=settings.spot_exchange,
        spot_token=settings.spot_token,
        strike_interval=settings.strike_interval,
        window=settings.strike_window,
        max_tokens_per_quote=settings.max_tokens_per_quote,
        instrument_store=InstrumentStore(conn),
    )
    service = MarketService(
        gateway, assembler, resolver, TTLCache(), settings, scrip_master=scrip_master
    )
    hub = SubscriberHub()
    schedulers = [
        BroadcastScheduler(
            hub,
            service.market_events,
            settings.market_interval,
            name="market",
            cycle_timeout=settings.http_timeout,
            max_idle=settings.client_idle_timeout or None,
        ),
        BroadcastScheduler(
            hub,
            service.chain_events,
            settings.chain_interval,
            name="options",
            cycle_timeout=settings.chain_interval,
        ),
    ]

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "OptionDesk starting: %s, %s gateway",
            settings.underlying,
            "simulated" if settings.simulated else "Angel One",
        )
        for scheduler in schedulers:
            await scheduler.start()
        try:
            yield
        finally:
            for scheduler in schedulers:
                await scheduler.stop()
            await gateway.close()
            conn.close()
            logger.info("OptionDesk stopped")

    app = FastAPI(title="OptionDesk", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service
    app.state.hub = hub
    app.state.schedulers = schedulers

    _install_error_handlers(app)
    app.include_router(create_api_router(service))
    app.include_router(create_stream_router(hub, service))

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "clients": len(hub),
            "schedulers": {
                s.name: {"running": s.running, "cycles": s.cycles, "failures": s.failures}
                for s in schedulers
            },
        }

    return app


def run() -> None:
    """Console entry point: load ``.env``, configure logging, serve with uvicorn."""
    load_dotenv()
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
