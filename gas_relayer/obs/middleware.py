"""ASGI middleware that times every HTTP request and records it in the registry."""

from typing import Callable, Any
import asyncio
import time
import uuid

from gas_relayer.obs.context import request_id_var
from gas_relayer.obs.metrics import MetricRegistry


class RequestInstrumentationMiddleware:
    def __init__(self, app: Callable, metrics: MetricRegistry):
        self.app = app
        self.metrics = metrics

    async def __call__(self, scope: dict, receive: Callable, send: Callable[[dict], Any]):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        token = request_id_var.set(str(uuid.uuid4()))
        method = scope.get("method", "")
        path = scope.get("path", "")
        start = time.monotonic()
        # Stays 500 if downstream raises before starting a response
        status_code = 500

        async def send_wrapper(message: dict):
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 200))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except asyncio.CancelledError:
            self.metrics.record_http_cancelled(method, path, time.monotonic() - start)
            raise
        except Exception:
            self.metrics.record_http_request(method, path, status_code, time.monotonic() - start)
            raise
        else:
            self.metrics.record_http_request(method, path, status_code, time.monotonic() - start)
        finally:
            request_id_var.reset(token)
