"""
Health check HTTP server for the transcoding worker.

Provides Kubernetes-compatible endpoints:
- /health (liveness): Process is running
- /ready (readiness): Encoder binary present and job backend reachable
- /status: Worker pool status (active jobs, elapsed time, counters)

Runs on port 8080 by default (configurable via REELQUEUE_WORKER_HEALTH_PORT).
"""

import asyncio
import json
import logging
import shutil
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from config import ENCODER_BINARY, WORKER_HEALTH_PORT
from worker.alerts import get_metrics

logger = logging.getLogger(__name__)


class HealthServer:
    """Simple async HTTP health server for worker liveness/readiness probes."""

    def __init__(
        self,
        port: int = WORKER_HEALTH_PORT,
        status_fn: Optional[Callable[[], Dict[str, Any]]] = None,
        backend_check_fn: Optional[Callable[[], Awaitable[bool]]] = None,
        host: str = "0.0.0.0",
    ):
        """
        Initialize health server.

        Args:
            port: Port to listen on
            status_fn: Returns the worker pool status for /status
            backend_check_fn: Async callback returning True if the queue/store backend is reachable
            host: Interface to bind
        """
        self.port = port
        self.host = host
        self.status_fn = status_fn
        self.backend_check_fn = backend_check_fn
        self._server: Optional[asyncio.Server] = None

    async def _check_encoder(self) -> bool:
        return shutil.which(ENCODER_BINARY) is not None

    async def _check_backend(self) -> bool:
        if self.backend_check_fn is None:
            return True
        try:
            return await self.backend_check_fn()
        except Exception as e:
            logger.debug(f"Backend readiness check failed: {e}")
            return False

    async def handle_path(self, path: str) -> Tuple[HTTPStatus, Dict[str, Any]]:
        """Route a request path to (status, JSON body)."""
        if path == "/health":
            return HTTPStatus.OK, {"status": "alive"}

        if path == "/ready":
            checks = {
                "encoder": await self._check_encoder(),
                "backend": await self._check_backend(),
            }
            ready = all(checks.values())
            status = HTTPStatus.OK if ready else HTTPStatus.SERVICE_UNAVAILABLE
            return status, {"status": "ready" if ready else "not_ready", "checks": checks}

        if path == "/status":
            pool_status = self.status_fn() if self.status_fn else {}
            return HTTPStatus.OK, {**pool_status, "metrics": get_metrics().to_dict()}

        if path == "/":
            return HTTPStatus.OK, {"service": "reelqueue-worker"}

        return HTTPStatus.NOT_FOUND, {"error": "not found"}

    async def _handle_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle incoming HTTP request."""
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            parts = request_line.decode("utf-8", errors="replace").split()
            path = parts[1] if len(parts) > 1 else "/"

            # Drain remaining headers (we don't need them)
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if line in (b"\r\n", b"\n", b""):
                    break

            status, payload = await self.handle_path(path)
            body = json.dumps(payload)
        except asyncio.TimeoutError:
            writer.close()
            return
        except Exception as e:
            logger.warning(f"Health server error: {e}")
            status, body = HTTPStatus.INTERNAL_SERVER_ERROR, '{"error": "server error"}'

        try:
            encoded = body.encode()
            head = (
                f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                f"Content-Type: application/json\r\n"
                f"Content-Length: {len(encoded)}\r\n"
                f"Connection: close\r\n"
                f"\r\n"
            )
            writer.write(head.encode() + encoded)
            await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def start(self):
        """Start the health server."""
        self._server = await asyncio.start_server(self._handle_request, self.host, self.port)
        logger.info(f"Health server listening on port {self.port}")

    async def stop(self):
        """Stop the health server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
