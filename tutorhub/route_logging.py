from __future__ import annotations

import logging
import time

from fastapi.routing import APIRoute
from starlette.requests import Request

from tutorhub.config import settings
from tutorhub.request_context import current_endpoint


logger = logging.getLogger('tutorhub.request')


class EndpointNameRoute(APIRoute):
    """Labels each request with its route template and logs slow handlers."""

    def get_route_handler(self):
        original_handler = super().get_route_handler()
        label = f"{','.join(sorted(self.methods or []))} {self.path}"

        async def custom_handler(request: Request):
            token = current_endpoint.set(label)
            started = time.perf_counter()
            status_code: int | str = 'raised'
            try:
                response = await original_handler(request)
                status_code = response.status_code
                return response
            finally:
                duration_ms = (time.perf_counter() - started) * 1000.0
                if duration_ms >= settings.metrics_slow_ms:
                    logger.info(
                        'request_slow endpoint=%s path=%s status_code=%s duration_ms=%.2f',
                        label,
                        request.url.path,
                        status_code,
                        duration_ms,
                    )
                current_endpoint.reset(token)

        return custom_handler
