"""REST routes. Every response uses the ``{status, message, data}`` envelope."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidExpiryError
from .market.models import Credential
from .market.service import MarketService

logger = logging.getLogger(__name__)


def envelope(data: Any = None, message: str = "OK", status: bool = True) -> dict:
    return {"status": status, "message": message, "data": data}


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_id: str = Field(alias="clientId", min_length=1)
    password: str = Field(min_length=1)
    totp: str | None = None


def create_api_router(service: MarketService) -> APIRouter:
    """Create the ``/api`` router with a reference to the market service."""
    router = APIRouter(prefix="/api", tags=["market"])

    @router.post("/login")
    async def login(body: LoginRequest) -> dict:
        data = await service.login(Credential(body.client_id, body.password, body.totp))
        return envelope(data, "Login successful")

    @router.post("/logout")
    async def logout() -> dict:
        await service.logout()
        return envelope(message="Logout successful")

    @router.get("/dashboard")
    async def dashboard() -> dict:
        return envelope(await service.get_dashboard())

    @router.get("/options")
    async def options(expiry: str | None = None) -> dict:
        if not expiry:
            raise InvalidExpiryError("Expiry date is required")
        chain = await service.get_options_chain(expiry)
        return envelope(chain.to_dict())

    @router.get("/market-data")
    async def market_data() -> dict:
        snapshot = await service.get_market_snapshot()
        return envelope(snapshot.to_dict())

    @router.get("/expiry-dates")
    async def expiry_dates() -> dict:
        return envelope(await service.get_expiry_dates())

    @router.get("/system-status")
    async def system_status() -> dict:
        return envelope(service.system_status())

    return router
