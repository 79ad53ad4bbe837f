"""Market data subsystem for OptionDesk.

Public API:
    TTLCache              - Thread-safe in-memory store with per-entry expiry
    ScripMasterCache      - Single-flight cache of the broker's instrument list
    TokenResolver         - Strike → instrument token resolution
    SessionManager        - Broker login, token storage and 401 recovery
    MarketGateway         - Abstract interface for broker gateways
    ChainAssembler        - Builds an OptionChain from one round of quotes
    SubscriberHub         - Registry of live connections and fan-out channel
    BroadcastScheduler    - Fixed-interval producer → hub loop
    MarketService         - Operations behind the REST routes and the socket
    create_market_gateway - Factory that selects Angel One or the simulator
    create_stream_router  - FastAPI router factory for the WebSocket endpoint
"""

from .broadcast import BroadcastScheduler, Event, SubscriberHub
from .cache import TTLCache
from .chain import ChainAssembler
from .factory import create_market_gateway
from .interface import MarketGateway
from .models import MarketSnapshot, OptionChain, OptionLeg, StrikeRow, TokenMap
from .resolver import TokenResolver
from .scrip_master import ScripMasterCache, ScripMasterSnapshot
from .service import MarketService
from .session import SessionManager
from .stream import create_stream_router

__all__ = [
    "BroadcastScheduler",
    "ChainAssembler",
    "Event",
    "MarketGateway",
    "MarketService",
    "MarketSnapshot",
    "OptionChain",
    "OptionLeg",
    "ScripMasterCache",
    "ScripMasterSnapshot",
    "SessionManager",
    "StrikeRow",
    "SubscriberHub",
    "TTLCache",
    "TokenMap",
    "TokenResolver",
    "create_market_gateway",
    "create_stream_router",
]
