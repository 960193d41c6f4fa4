from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow import __version__
from orderflow.common.config import Settings
from orderflow.common.logging import install_fastapi_request_id_middleware, log_event
from orderflow.errors import OrderNotFoundError, OrderValidationError
from orderflow.orders.models import decimal_to_wire
from orderflow.realtime.registry import WebSocketSubscriber
from orderflow.runtime import Runtime, open_runtime

logger = logging.getLogger(__name__)


class CreateOrderRequest(BaseModel):
    fromToken: str = Field(..., min_length=1)
    toToken: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request body"
    first = errors[0]
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = str(first.get("msg") or "invalid value")
    return f"{loc}: {msg}" if loc else msg


def create_app(settings: Optional[Settings] = None, **runtime_overrides: Any) -> FastAPI:
    """
    Build the HTTP/websocket app.

    The runtime (store, queue, bus, workers) is opened on startup and closed on
    shutdown; `runtime_overrides` are passed to `open_runtime`.
    """
    cfg = settings or Settings.from_env()
    app = FastAPI(title="Order execution service", version=__version__)
    install_fastapi_request_id_middleware(app)
    app.state.settings = cfg
    app.state.runtime = None

    def _runtime() -> Runtime:
        runtime = app.state.runtime
        if runtime is None:
            raise RuntimeError("runtime not started")
        return runtime

    @app.on_event("startup")
    async def _startup() -> None:
        stack = AsyncExitStack()
        app.state.runtime = await stack.enter_async_context(open_runtime(cfg, **runtime_overrides))
        app.state.exit_stack = stack
        log_event(logger, "startup", service_name=cfg.service_name, run_workers=cfg.run_workers)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        stack: Optional[AsyncExitStack] = getattr(app.state, "exit_stack", None)
        app.state.runtime = None
        if stack is not None:
            await stack.aclose()
        log_event(logger, "shutdown", service_name=cfg.service_name)

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "Invalid request", "message": _validation_message(exc)})

    @app.exception_handler(OrderValidationError)
    async def _order_invalid(_request: Request, exc: OrderValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "Invalid request", "message": str(exc)})

    @app.exception_handler(OrderNotFoundError)
    async def _order_not_found(_request: Request, exc: OrderNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "Not found", "message": str(exc)})

    @app.get("/")
    async def index() -> dict[str, Any]:
        return {
            "service": cfg.service_name,
            "version": __version__,
            "endpoints": {
                "createOrder": "POST /orders",
                "getOrder": "GET /orders/{orderId}",
                "listOrders": "GET /orders",
                "websocket": "GET /ws",
                "health": "GET /health",
            },
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "service": cfg.service_name, "ts": datetime.now(timezone.utc).isoformat()}

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return await health()

    @app.get("/readyz")
    async def readyz(response: Response) -> dict[str, Any]:
        ok = app.state.runtime is not None
        response.status_code = 200 if ok else 503
        return {"status": "ok" if ok else "not_ready", "service": cfg.service_name}

    @app.get("/ops/queue")
    async def ops_queue() -> dict[str, Any]:
        runtime = _runtime()
        workers = runtime.workers
        return {
            "jobs": await runtime.queue.stats(),
            "workers": {
                "running": bool(workers and workers.running),
                "concurrency": workers.concurrency if workers else 0,
                "inFlight": len(workers.in_flight()) if workers else 0,
            },
            "subscribers": runtime.registry.count(),
        }

    @app.post("/orders", status_code=201)
    async def create_order(body: CreateOrderRequest) -> dict[str, Any]:
        order = await _runtime().service.submit(from_token=body.fromToken, to_token=body.toToken, amount=body.amount)
        return {
            "orderId": order.order_id,
            "status": order.status.value,
            "fromToken": order.from_token,
            "toToken": order.to_token,
            "amount": decimal_to_wire(order.amount),
        }

    @app.get("/orders")
    async def list_orders() -> dict[str, Any]:
        orders = await _runtime().service.list_orders()
        return {"orders": [o.to_dict() for o in orders], "count": len(orders)}

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str) -> dict[str, Any]:
        order = await _runtime().service.get_order(order_id)
        return order.to_dict()

    @app.websocket("/ws")
    async def updates(websocket: WebSocket) -> None:
        await websocket.accept()
        registry = _runtime().registry
        handle = WebSocketSubscriber(websocket)
        await registry.connect(handle)
        try:
            # Client messages are ignored; receiving only detects the disconnect.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            registry.disconnect(handle)

    return app
