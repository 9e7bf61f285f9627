"""
FastAPI Application - Runtime Control Surface

Exposes the engine over HTTP: subsystem control, registry listings,
market-data reads, order operations, script operations and a websocket
ticker stream.

Usage:
    uvicorn app.main:app --host 0.0.0.0 --port 9050

Docs:
    - Swagger: http://localhost:9050/docs
    - ReDoc: http://localhost:9050/redoc

Errors:
    Runtime errors are returned as {"error": <status string>, "detail": <message>}
    with an HTTP status picked from the error category.
"""

from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from core.certs import check_certs
from core.config import Settings, validate_configuration
from core.errors import (
    CapabilityNotSupportedError,
    PipeClosedError,
    UnknownInstrumentError,
    VenueHubError,
    status_code,
)
from core.logging import get_logger, set_log_level
from core.schemas import (
    AssetClass,
    Instrument,
    OrderDetail,
    Orderbook,
    OrderSubmit,
    RPCEndpoint,
    ScriptStatus,
    SubmitResult,
    SubsystemStatus,
    Ticker,
)
from services.engine import Engine

logger = get_logger(__name__)


# ============================================
# Request Models
# ============================================

class Toggle(BaseModel):
    enable: bool


# ============================================
# Error Mapping
# ============================================

_HTTP_STATUS = {
    "config-invalid": 400,
    "policy-violation": 400,
    "permanent": 400,
    "already-started": 409,
    "not-started": 409,
    "integrity": 409,
    "capacity-exhausted": 429,
    "start-failed": 500,
    "stop-failed": 500,
    "fatal-internal": 500,
    "transient": 503,
}


def http_status(exc: VenueHubError) -> int:
    """
    Example:
        >>> http_status(UnknownVenueError("kraken"))
        404
        >>> http_status(AlreadyStartedError("database"))
        409
    """
    if isinstance(exc, LookupError):
        return 404
    if isinstance(exc, CapabilityNotSupportedError):
        return 501
    return _HTTP_STATUS.get(exc.category, 500)


def _instrument(pair: str) -> Instrument:
    try:
        return Instrument.parse(pair)
    except ValueError as e:
        raise UnknownInstrumentError(str(e)) from e


def _engine(request: Request) -> Engine:
    return request.app.state.engine


# ============================================
# Application Factory
# ============================================

def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """
    Build the control surface.

    Args:
        engine: Pre-built engine (tests); when None one is built from Settings()
            at startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=== Application Starting ===")
        runtime = engine or Engine(Settings())
        validate_configuration(runtime.settings)
        set_log_level(runtime.settings.log_level)
        check_certs(runtime.settings.tls_dir)

        app.state.engine = runtime
        await runtime.start()
        logger.info("=== Started Successfully ===")

        yield

        logger.info("=== Shutting Down ===")
        await runtime.stop()
        logger.info("=== Shutdown Complete ===")

    app = FastAPI(
        title="venuehub runtime",
        description=(
            "Control surface of the exchange runtime core.\n\n"
            "## REST Endpoints\n"
            "- `GET /subsystems` / `PUT /subsystems/{name}` - Subsystem status and control\n"
            "- `GET /rpc-endpoints` - Configured remote-control endpoints\n"
            "- `GET /exchanges` - Loaded venue adapters\n"
            "- `GET /tickers/{venue}/{pair}` / `GET /orderbooks/{venue}/{pair}` - Latest market data\n"
            "- `GET|POST|DELETE /orders...` - Order management\n"
            "- `/scripts...` - Script virtual machines\n\n"
            "## WebSocket Streams\n"
            "- `ws://{host}/ws/tickers/{venue}/{pair}?asset_class=perpetual_swap`"
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    @app.exception_handler(VenueHubError)
    async def venuehub_error_handler(request: Request, exc: VenueHubError):
        code = http_status(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"error": status_code(exc), "detail": str(exc)})

    _register_system_routes(app)
    _register_market_routes(app)
    _register_order_routes(app)
    _register_script_routes(app)
    _register_websocket_routes(app)
    return app


# ============================================
# System Endpoints
# ============================================

def _register_system_routes(app: FastAPI) -> None:

    @app.get("/", tags=["System"])
    async def root(request: Request):
        engine = _engine(request)
        return {
            "name": "venuehub runtime",
            "version": "1.0.0",
            "docs": "/docs",
            "exchanges": engine.exchanges.list_exchanges(),
            "subsystems": engine.facade.list_subsystems(),
        }

    @app.get("/health", tags=["System"])
    async def health_check(request: Request):
        """Health check - pings every enabled exchange."""
        engine = _engine(request)
        health = await engine.exchanges.health_check_all()
        return {
            "status": "healthy" if all(health.values()) else "degraded",
            "internet": engine.connection_monitor.online,
            "exchanges": health,
        }

    @app.get("/subsystems", response_model=Dict[str, SubsystemStatus], tags=["System"])
    async def get_subsystems(request: Request):
        return _engine(request).facade.statuses()

    @app.put("/subsystems/{name}", tags=["System"])
    async def set_subsystem(name: str, body: Toggle, request: Request):
        """Enable or disable a subsystem. Lifecycle errors come back as 409/500."""
        facade = _engine(request).facade
        await facade.set(name, body.enable)
        return {"status": status_code(None), "subsystem": name, "running": facade.get(name).is_running()}

    @app.get("/rpc-endpoints", response_model=Dict[str, RPCEndpoint], tags=["System"])
    async def get_rpc_endpoints(request: Request):
        return _engine(request).facade.list_rpc_endpoints()

    @app.get("/exchanges", tags=["System"])
    async def list_exchanges(request: Request):
        """List loaded exchanges and their capabilities."""
        exchanges = _engine(request).exchanges
        return {
            "exchanges": [
                {
                    "name": ex.get_name(),
                    "enabled": ex.is_enabled(),
                    "asset_classes": sorted(a.value for a in ex.supported_asset_classes()),
                    "capabilities": dict(ex.capabilities),
                }
                for ex in exchanges.list()
            ]
        }


# ============================================
# Market Data Endpoints
# ============================================

def _register_market_routes(app: FastAPI) -> None:

    @app.get("/tickers/{venue}", response_model=List[Ticker], tags=["Market Data"])
    async def get_venue_tickers(venue: str, request: Request):
        engine = _engine(request)
        engine.exchanges.get_exchange(venue)
        return engine.tickers.get_venue(venue)

    @app.get("/tickers/{venue}/{pair}", response_model=Ticker, tags=["Market Data"])
    async def get_ticker(
        venue: str,
        pair: str,
        request: Request,
        asset_class: AssetClass = Query(default=AssetClass.PERPETUAL_SWAP),
    ):
        return _engine(request).tickers.get(venue, _instrument(pair), asset_class)

    @app.get("/orderbooks/{venue}/{pair}", response_model=Orderbook, tags=["Market Data"])
    async def get_orderbook(
        venue: str,
        pair: str,
        request: Request,
        asset_class: AssetClass = Query(default=AssetClass.PERPETUAL_SWAP),
    ):
        return _engine(request).orderbooks.get(venue, _instrument(pair), asset_class)

    @app.get("/portfolio", tags=["Market Data"])
    async def get_portfolio(request: Request):
        engine = _engine(request)
        return {
            "collated": engine.portfolio.collated(),
            "venues": [h.model_dump(mode="json") for h in engine.holdings.list()],
        }


# ============================================
# Order Endpoints
# ============================================

def _register_order_routes(app: FastAPI) -> None:

    @app.get("/orders", response_model=List[OrderDetail], tags=["Orders"])
    async def list_orders(request: Request, venue: Optional[str] = Query(default=None)):
        return _engine(request).orders.get_orders(venue)

    @app.get("/orders/id/{internal_order_id}", response_model=OrderDetail, tags=["Orders"])
    async def get_order(internal_order_id: str, request: Request):
        return _engine(request).orders.get_order(internal_order_id)

    @app.post("/orders/{venue}", response_model=SubmitResult, tags=["Orders"])
    async def submit_order(venue: str, body: OrderSubmit, request: Request):
        return await _engine(request).orders.submit(venue, body)

    @app.delete("/orders/{venue}/{order_id}", response_model=OrderDetail, tags=["Orders"])
    async def cancel_order(venue: str, order_id: str, request: Request):
        return await _engine(request).orders.cancel(venue, order_id)

    @app.delete("/orders", tags=["Orders"])
    async def cancel_all_orders(request: Request, venue: Optional[str] = Query(default=None)):
        return await _engine(request).orders.cancel_all(venue)

    @app.post("/orders/{venue}/reconcile", tags=["Orders"])
    async def reconcile_orders(venue: str, request: Request):
        return await _engine(request).orders.reconcile(venue)


# ============================================
# Script Endpoints
# ============================================

def _register_script_routes(app: FastAPI) -> None:

    @app.get("/scripts", response_model=List[ScriptStatus], tags=["Scripts"])
    async def list_running_scripts(request: Request):
        return _engine(request).scripts.list()

    @app.get("/scripts/files", tags=["Scripts"])
    async def list_script_files(request: Request):
        return {"scripts": _engine(request).scripts.list_scripts()}

    @app.post("/scripts/upload", tags=["Scripts"])
    async def upload_script(
        request: Request,
        name: str = Query(...),
        archived: bool = Query(default=False),
        overwrite: bool = Query(default=False),
    ):
        """Upload a script (raw body) or a zip of scripts (archived=true)."""
        data = await request.body()
        path = await _engine(request).scripts.upload(name, data, archived=archived, overwrite=overwrite)
        return {"status": status_code(None), "path": str(path)}

    @app.post("/scripts/{name}/execute", response_model=ScriptStatus, tags=["Scripts"])
    async def execute_script(name: str, request: Request):
        vm = await _engine(request).scripts.execute(name)
        return vm.status()

    @app.get("/scripts/{name}/source", response_class=PlainTextResponse, tags=["Scripts"])
    async def read_script(name: str, request: Request):
        return _engine(request).scripts.read(name).decode("utf-8", errors="replace")

    @app.put("/scripts/{name}/autoload", tags=["Scripts"])
    async def toggle_autoload(name: str, body: Toggle, request: Request):
        scripts = _engine(request).scripts
        scripts.autoload_toggle(name, body.enable)
        return {"status": status_code(None), "auto_load": scripts.config.auto_load}

    @app.get("/scripts/vm/{vm_id}", response_model=ScriptStatus, tags=["Scripts"])
    async def query_vm(vm_id: str, request: Request):
        return _engine(request).scripts.query(vm_id)

    @app.delete("/scripts/vm/{vm_id}", tags=["Scripts"])
    async def stop_vm(vm_id: str, request: Request):
        await _engine(request).scripts.stop_vm(vm_id)
        return {"status": status_code(None)}

    @app.delete("/scripts/vm", tags=["Scripts"])
    async def stop_all_vms(request: Request):
        await _engine(request).scripts.stop_all()
        return {"status": status_code(None)}


# ============================================
# WebSocket Endpoints
# ============================================

def _register_websocket_routes(app: FastAPI) -> None:

    @app.websocket("/ws/tickers/{venue}/{pair}")
    async def websocket_tickers(
        websocket: WebSocket,
        venue: str,
        pair: str,
        asset_class: AssetClass = Query(default=AssetClass.PERPETUAL_SWAP),
    ):
        """
        Stream ticker updates for one instrument.

        Example:
            ws://localhost:9050/ws/tickers/binance/BTC-USDT

        The stream ends with close code 1001 when the dispatcher releases
        the subscription (e.g., the dispatch subsystem was stopped).
        """
        engine: Engine = websocket.app.state.engine
        await websocket.accept()
        logger.info(f"WS connected: tickers/{venue}/{pair}")

        try:
            pipe = engine.tickers.subscribe(venue, Instrument.parse(pair), asset_class)
        except (VenueHubError, ValueError) as e:
            await websocket.close(code=1008, reason=str(e))
            return

        try:
            while True:
                ticker = await pipe.recv()
                await websocket.send_json(ticker.model_dump(mode="json"))
        except PipeClosedError:
            await websocket.close(code=1001, reason="subscription released")
        except WebSocketDisconnect:
            logger.info(f"WS disconnected: tickers/{venue}/{pair}")
        finally:
            engine.dispatcher.release(pipe)
            logger.info(f"WS ended: tickers/{venue}/{pair}")


app = create_app()
