"""HTTP API server for record management and label previews."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
import uvicorn

from .config import Config
from .errors import PrintSubmissionFailure, RenderFailure, StoreIOFailure
from .health import HealthMonitor
from .labels import LABEL_TEMPLATE, TEMPLATES_DIR, barcode_svg
from .logging import get_logger
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .printer import LabelPrinter
from .reconciler import ScanReconciler
from .records import RecordStore

SAMPLE_LABEL_TYPE = "TPP2W-G2"
SAMPLE_ADDRESS = "0.36.119.87.182.61"


class DeviceRecordOut(BaseModel):
    """Stored device record response model."""

    id: int
    key: str
    address: str
    label_type: str
    raw_id: Optional[str]
    printer: Optional[str]
    created_at: str


class RemoveResult(BaseModel):
    """Outcome of a record removal request."""

    success: bool
    message: Optional[str] = None


def create_app(
    config: Config,
    store: RecordStore,
    printer: LabelPrinter,
    health: Optional[HealthMonitor] = None,
    reconciler: Optional[ScanReconciler] = None,
) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("tibbo.api")
    request_logger = get_logger("tibbo.api.middleware")
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
    app = FastAPI(
        title="Tibbo Barcode Label Service",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    config.label_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/labels", StaticFiles(directory=str(config.label_dir)), name="labels")

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("Unhandled API error")
            if health:
                await health.record_failure("api", exc)
            raise HTTPException(status_code=500, detail="Internal server error") from exc
        duration_seconds = time.perf_counter() - start
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        observe_request(
            request.method,
            path_template,
            response.status_code,
            duration_seconds,
        )
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    async def _flush() -> None:
        try:
            await store.save()
        except StoreIOFailure as exc:
            logger.exception("Failed to persist record removal")
            if health:
                await health.record_failure("store", exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
            ) from exc
        if health:
            await health.record_success("store")

    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    async def status_report() -> Dict[str, Any]:
        report: Dict[str, Any] = {
            "records": await store.count(),
            "printer": config.printer,
            "allow_duplicates": config.allow_duplicates,
            "dedup_key": config.dedup_key,
            "record_policy": config.record_policy,
            "pending_prints": reconciler.pending if reconciler else 0,
        }
        if health:
            report["subsystems"] = dict(await health.snapshot())
        return report

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/devices", response_model=list[DeviceRecordOut])
    async def list_devices() -> list[DeviceRecordOut]:
        rows = await store.records()
        return [DeviceRecordOut(**row.__dict__) for row in rows]

    @app.get("/remove", response_model=RemoveResult, response_model_exclude_none=True)
    async def remove(
        mac: Optional[str] = Query(default=None),
        raw_id: Optional[str] = Query(default=None, alias="id"),
    ) -> RemoveResult:
        if mac:
            removed = await store.remove_by_address(mac)
            message = f"Removed device with mac '{mac}' from database"
        elif raw_id:
            removed = await store.remove_by_raw_id(raw_id)
            message = f"Removed device with id '{raw_id}' from database"
        else:
            await store.remove(None)
            await _flush()
            return RemoveResult(success=True, message="Removed all devices from database")
        if not removed:
            return RemoveResult(success=False)
        await _flush()
        return RemoveResult(success=True, message=message)

    @app.get("/test")
    async def test_print() -> FileResponse:
        try:
            path = await printer.print_label(SAMPLE_LABEL_TYPE, SAMPLE_ADDRESS)
        except RenderFailure as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
            ) from exc
        except PrintSubmissionFailure as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        return FileResponse(
            path,
            media_type="application/pdf",
            filename=path.name,
            content_disposition_type="inline",
        )

    @app.get("/template", response_class=HTMLResponse)
    async def template(
        request: Request,
        label_type: str = Query(default=SAMPLE_LABEL_TYPE, alias="type"),
        mac: str = Query(default=SAMPLE_ADDRESS),
    ) -> HTMLResponse:
        barcode_url = request.url_for("barcode").include_query_params(text=mac) if mac else None
        return templates.TemplateResponse(
            request,
            LABEL_TEMPLATE,
            {
                "type": label_type,
                "mac": mac,
                "width": config.label_width,
                "height": config.label_height,
                "barcode_url": str(barcode_url) if barcode_url else "",
            },
        )

    @app.get("/barcode", name="barcode")
    async def barcode(text: str = Query(min_length=1)) -> Response:
        try:
            svg = await asyncio.to_thread(barcode_svg, text)
        except RenderFailure as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return Response(content=svg, media_type="image/svg+xml")

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(
        self,
        config: Config,
        store: RecordStore,
        printer: LabelPrinter,
        health: Optional[HealthMonitor] = None,
        reconciler: Optional[ScanReconciler] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.printer = printer
        self.health = health
        self.reconciler = reconciler
        self.logger = get_logger("tibbo.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.store, self.printer, self.health, self.reconciler)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
