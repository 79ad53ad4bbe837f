"""WebSocket endpoint for live market and options-chain updates."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..errors import OptionDeskError
from .broadcast import CLOSE, Subscriber, SubscriberHub
from .expiries import ist_now
from .service import MarketService

logger = logging.getLogger(__name__)


def error_message(message: str) -> dict:
    return {"event": "error", "data": {"status": False, "message": message}}


def welcome_message(subscriber: Subscriber, service: MarketService) -> dict:
    latest = service.latest_snapshot()
    return {
        "event": "welcome",
        "data": {
            "clientId": subscriber.id,
            "serverTime": ist_now().isoformat(),
            "message": "Connected to market feed",
            "marketData": latest.to_dict() if latest is not None else None,
        },
    }


def _symbols(data: dict[str, Any]) -> list[Any] | None:
    symbols = data.get("symbols")
    if not isinstance(symbols, list) or not symbols:
        return None
    if not all(isinstance(s, str) and s.strip() for s in symbols):
        return None
    return symbols


async def handle_message(
    service: MarketService,
    hub: SubscriberHub,
    subscriber: Subscriber,
    message: Any,
) -> dict | None:
    """Answer one inbound ``{"event": ..., "data": ...}`` document.

    Returns the reply to queue for this connection. A failed request is
    answered with an ``error`` document and never closes the connection.
    """
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        return error_message("Messages must look like {\"event\": ..., \"data\": {...}}")
    event = message["event"]
    data = message.get("data") or {}
    if not isinstance(data, dict):
        return error_message(f"{event}: data must be an object")
    hub.touch(subscriber.id)

    try:
        if event == "ping":
            return {"event": "pong", "data": {"timestamp": time.time()}}

        if event == "get_market_data":
            snapshot = await service.get_market_snapshot()
            return {"event": "market_update", "data": snapshot.to_dict()}

        if event == "get_options_data":
            expiry = data.get("expiry")
            if not expiry:
                return error_message("Expiry date is required")
            chain = await service.get_options_chain(str(expiry))
            return {"event": "options_data", "data": chain.to_dict()}

        if event in ("subscribe", "unsubscribe"):
            symbols = _symbols(data)
            if symbols is None:
                return error_message(f"{event}: symbols must be a non-empty list of strings")
            if event == "subscribe":
                changed = hub.subscribe(subscriber.id, symbols)
                return {"event": "subscription_success", "data": {"symbols": changed}}
            changed = hub.unsubscribe(subscriber.id, symbols)
            return {"event": "unsubscription_success", "data": {"symbols": changed}}
    except OptionDeskError as e:
        logger.warning("Client %s: %s failed: %s", subscriber.id, event, e)
        return error_message(str(e))

    return error_message(f"Unknown event: {event}")


async def _drain(websocket: WebSocket, subscriber: Subscriber) -> None:
    """Writer task: forward everything queued for this connection."""
    try:
        while True:
            message = await subscriber.queue.get()
            if message is CLOSE:
                logger.info("Closing idle connection %s", subscriber.id)
                await websocket.close(code=1000)
                return
            await websocket.send_json(message)
    except (WebSocketDisconnect, RuntimeError) as e:
        # Socket already closed; the reader side cleans up
        logger.debug("Writer for %s stopped: %r", subscriber.id, e)
    except Exception:
        logger.exception("Writer for %s failed", subscriber.id)


def create_stream_router(hub: SubscriberHub, service: MarketService) -> APIRouter:
    """Create the WebSocket router with references to the hub and the service.

    This factory pattern lets us inject both without globals.
    """
    router = APIRouter(tags=["streaming"])

    @router.websocket("/ws/market")
    async def market_socket(websocket: WebSocket) -> None:
        """One reader loop for inbound requests plus one writer task per connection.

        Schedulers publish into the subscriber's queue; direct replies go
        through the same queue so frames are never written concurrently.
        """
        await websocket.accept()
        subscriber = hub.connect()
        hub.send(subscriber.id, welcome_message(subscriber, service))
        writer = asyncio.create_task(
            _drain(websocket, subscriber), name=f"ws-writer-{subscriber.id}"
        )

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    hub.send(subscriber.id, error_message("Malformed JSON"))
                    continue
                try:
                    reply = await handle_message(service, hub, subscriber, message)
                except Exception:
                    logger.exception("Client %s: unhandled error", subscriber.id)
                    reply = error_message("Internal server error")
                if reply is not None:
                    hub.send(subscriber.id, reply)
        except WebSocketDisconnect:
            logger.debug("Client %s closed the socket", subscriber.id)
        finally:
            hub.disconnect(subscriber.id)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

    return router
