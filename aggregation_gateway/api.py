"""HTTP API for pushing and collecting aggregated metrics using FastAPI."""
from typing import Optional
import logging
import time

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from aggregation_gateway import codec
from aggregation_gateway.config import ServerConfig
from aggregation_gateway.errors import AggregationError, EncodingError, ParseError
from aggregation_gateway.store import AggregateStore
from aggregation_gateway.telemetry import GatewayMetrics
from aggregation_gateway.window import WindowController

logger = logging.getLogger(__name__)


class GatewayAPI:
    """FastAPI application exposing the push and collection endpoints."""

    def __init__(
        self,
        store: AggregateStore,
        window: WindowController,
        config: Optional[ServerConfig] = None,
        metrics: Optional[GatewayMetrics] = None,
    ):
        """
        Initialize the gateway API.

        Args:
            store: Aggregate shared by every request
            window: Controller reporting the current push deadline
            config: Paths and CORS origin
            metrics: Self-monitoring metrics, created if omitted
        """
        self.store = store
        self.window = window
        self.config = config or ServerConfig()
        self.metrics = metrics or GatewayMetrics()
        self.start_time = time.time()
        self.app = FastAPI(title="Prometheus Aggregation Gateway")

        self._setup_routes()

    def _cors_headers(self):
        return {"Access-Control-Allow-Origin": self.config.cors_origin}

    def _ingest(self, body: bytes):
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Payload is not valid UTF-8: {e}") from e
        families = codec.decode(text)
        return self.store.ingest(families)

    def _collect(self) -> bytes:
        return codec.encode(self.store.snapshot())

    def _setup_routes(self):
        """Setup API routes."""

        async def push(request: Request):
            """Merge a pushed exposition payload into the aggregate."""
            body = await request.body()
            started = time.perf_counter()
            try:
                window = await run_in_threadpool(self._ingest, body)
            except AggregationError as e:
                logger.warning(f"Rejected push from {request.client.host if request.client else 'unknown'}: {e}")
                self.metrics.record_rejection(type(e).__name__)
                return PlainTextResponse(
                    f"{e}\n", status_code=400, headers=self._cors_headers()
                )

            stats = await run_in_threadpool(self.store.stats)
            self.metrics.record_push(time.perf_counter() - started, stats["families"])
            return JSONResponse(
                {"nextResetTimestampSec": window.deadline},
                headers=self._cors_headers(),
            )

        async def collect():
            """Expose the current aggregate."""
            try:
                body = await run_in_threadpool(self._collect)
            except EncodingError as e:
                logger.error(f"Error encoding aggregate: {e}")
                return PlainTextResponse(
                    f"An error has occurred during metrics encoding:\n\n{e}\n",
                    status_code=500,
                )
            return Response(content=body, media_type=CONTENT_TYPE_LATEST)

        push_path = self.config.push_path
        if push_path.endswith("/"):
            # Subtree match, so /metrics/job/<name> style paths are accepted too
            push_path += "{suffix:path}"
        self.app.add_api_route(push_path, push, methods=["POST", "PUT"])
        self.app.add_api_route(self.config.metrics_path, collect, methods=["GET"])

        @self.app.get("/-/metrics")
        async def self_metrics():
            """Gateway's own metrics."""
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST,
            )

        @self.app.get("/healthz")
        async def healthz():
            """Health check endpoint."""
            return {"status": "healthy", "timestamp": time.time()}

        @self.app.get("/status")
        async def status():
            """Get current aggregate and window status."""
            stats = await run_in_threadpool(self.store.stats)
            return {
                "uptime_seconds": time.time() - self.start_time,
                "families": stats["families"],
                "series": stats["series"],
                "next_reset_timestamp": stats["next_reset_timestamp"],
                "next_reset_timestamp_with_buffer": stats["deadline"],
                "resets": self.window.resets,
                "batch_mode": self.store.batch_mode,
                "summary_policy": self.store.summary_policy,
            }

    def run(self, host: str = "0.0.0.0", port: int = 9091):
        """Run the API server."""
        import uvicorn
        uvicorn.run(self.app, host=host, port=port, log_level="info")
