# geovision_frontend.py
from __future__ import annotations

import dotenv
dotenv.load_dotenv()

import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
import uvicorn

from tools.population import PopulationTool
from worldpop_apis.config import WorldPopConfig
from worldpop_apis.errors import (
    ServiceError,
    TaskTimeoutError,
    ValidationError,
    WorldPopError,
)
from worldpop_apis.worldpop import WorldPopClient


def _configure_console_logging() -> None:
    """Console logging for request in / result out events."""
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(logging.INFO)

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s"))
    root.addHandler(ch)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("geovision.frontend").setLevel(logging.INFO)


logger = logging.getLogger("geovision.frontend")

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (TaskTimeoutError, 504),
    (ServiceError, 502),
)


def _status_for(exc: WorldPopError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(
    client: Optional[WorldPopClient] = None,
    *,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Create the FastAPI app.

    Endpoints:
    - POST /api/worldpop/request-population-analysis -> run a population analysis
    - GET  /api/worldpop/services                    -> WorldPop service catalogue
    - GET  /healthz                                  -> liveness

    When ``client`` is omitted the app builds one from WORLDPOP_* environment
    variables and closes it on shutdown.
    """
    if configure_logging:
        _configure_console_logging()
    owns_client = client is None
    worldpop = client or WorldPopClient(WorldPopConfig.from_env())
    tool = PopulationTool(worldpop)

    app = FastAPI(title="GeoVision WorldPop", version="0.1.0")
    app.state.population_tool = tool

    def _error_response(message: str, status_code: int) -> JSONResponse:
        return JSONResponse(
            {"error": message, "apiInfo": dict(tool.api_info)},
            status_code=status_code,
        )

    @app.on_event("startup")
    async def _on_startup() -> None:
        logger.info("System start: GeoVision WorldPop server is up (base_url=%s).", worldpop.config.base_url)

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        if owns_client:
            await worldpop.aclose()

    @app.post("/api/worldpop/request-population-analysis", response_class=JSONResponse)
    async def request_population_analysis(req: Request) -> JSONResponse:
        """
        Accept JSON: {analysisType, country, year1, year2?, selectedRoiGeometry?,
        resolution="100m", format="json"}.
        """
        try:
            body: Dict[str, Any] = await req.json()
        except ValueError:
            logger.exception("POST /api/worldpop/request-population-analysis -> invalid JSON body")
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        logger.info(
            "POST /api/worldpop/request-population-analysis -> request in: type=%s, country=%s, year1=%s, year2=%s",
            body.get("analysisType"), body.get("country"), body.get("year1"), body.get("year2"),
        )
        t0 = time.time()
        try:
            result = await tool.run_analysis(body)
        except WorldPopError as e:
            status_code = _status_for(e)
            if status_code >= 500:
                logger.error("Population analysis failed (%d): %s", status_code, e)
            else:
                logger.info("Population analysis rejected (%d): %s", status_code, e)
            return _error_response(str(e), status_code)

        dt = (time.time() - t0) * 1000.0
        logger.info(
            "POST /api/worldpop/request-population-analysis -> returned: type=%s, elapsed=%.1f ms",
            body.get("analysisType"), dt,
        )
        return JSONResponse(result)

    @app.get("/api/worldpop/services", response_class=JSONResponse)
    async def worldpop_services() -> JSONResponse:
        try:
            catalogue = await worldpop.list_services()
        except ServiceError as e:
            logger.error("GET /api/worldpop/services -> %s", e)
            return _error_response(str(e), 502)
        return JSONResponse(dict(catalogue))

    @app.get("/healthz", response_class=PlainTextResponse)
    async def healthz() -> PlainTextResponse:
        logger.info("GET /healthz")
        return PlainTextResponse("ok")

    return app


def main() -> None:
    """
    Start the server.
    Run: python -c "import geovision_frontend as f; f.main()"
    """
    app = create_app()
    logger.info("Launching Uvicorn...")
    uvicorn.run(app, host="127.0.0.1", port=8000, log_level="info")


if __name__ == "__main__":
    main()
