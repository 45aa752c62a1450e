import json
import logging
import platform
import time
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.background import BackgroundTask

from chatproxy.config import Settings, settings
from chatproxy.constants import APP_VERSION
from chatproxy.handler import ChatProxy
from chatproxy.ledger import UsageLedger, build_ledger
from chatproxy.metrics import set_app_info
from chatproxy.upstream import UpstreamForwarder

# Configure structured logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("chatproxy")

# Every method reaches the proxy so that rejections carry CORS headers
CHAT_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT"]


async def read_json_body(request: Request) -> Any:
    """Parsed JSON body, or None when empty or not JSON."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.debug("Request body is not valid JSON")
        return None


def create_app(
    app_settings: Optional[Settings] = None,
    ledger: Optional[UsageLedger] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Callable[[], datetime]] = None,
    rng: Optional[Callable[[], float]] = None
) -> FastAPI:
    app_settings = app_settings or settings
    if ledger is None:
        ledger = build_ledger(app_settings)
    forwarder = UpstreamForwarder.from_settings(app_settings, transport=transport)
    proxy = ChatProxy(app_settings, ledger, forwarder, clock=clock, rng=rng)

    app = FastAPI(title="chatproxy", version=APP_VERSION)
    app.state.proxy = proxy
    app.state.ledger = ledger
    set_app_info(APP_VERSION, platform.python_version(), ledger.backend)

    @app.get("/")
    def health():
        return {
            "name": "chatproxy",
            "status": "ok",
            "time": time.time(),
            "backend": ledger.backend,
            "configured": app_settings.is_configured,
        }

    if app_settings.enable_metrics:
        @app.get("/metrics")
        def metrics():
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.api_route("/api/chat", methods=CHAT_METHODS)
    async def chat(request: Request):
        body = await read_json_body(request)
        result = await proxy.handle(request.method, request.headers, body)
        sweep = BackgroundTask(proxy.maybe_sweep)
        if result.body is None:
            return Response(status_code=result.status_code, headers=result.headers, background=sweep)
        return JSONResponse(result.body, status_code=result.status_code, headers=result.headers, background=sweep)

    logger.info(
        f"chatproxy ready - backend={ledger.backend}, daily_limit={app_settings.daily_limit}, "
        f"hourly_limit={app_settings.hourly_limit}, strict_quota={app_settings.strict_quota}"
    )
    return app


app = create_app()
