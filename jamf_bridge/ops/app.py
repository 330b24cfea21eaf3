from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI

from ..client import JamfBridgeClient
from ..common.logging import init_structured_logging, install_fastapi_request_id_middleware, log_event

logger = logging.getLogger(__name__)

SERVICE_NAME = "jamf-bridge"


def create_app(client: Optional[JamfBridgeClient] = None) -> FastAPI:
    """
    Operational status surface for one client instance.

    When no client is passed one is built from the environment and closed on
    shutdown.
    """
    owned = client is None
    bridge = client or JamfBridgeClient.from_env()

    app = FastAPI(title="Jamf Bridge Ops")
    install_fastapi_request_id_middleware(app)

    if owned:

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            log_event(logger, "ops.shutdown")
            await bridge.aclose()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/ops/status")
    def ops_status() -> dict[str, Any]:
        return {"service": SERVICE_NAME, **bridge.status()}

    return app


def main() -> FastAPI:
    init_structured_logging(service=SERVICE_NAME)
    return create_app()
