"""Route class that sanitizes path parameters before the endpoint runs."""

from typing import Callable

from fastapi import Request, Response
from fastapi.routing import APIRoute


class SanitizedRoute(APIRoute):
    """
    ``APIRoute`` whose path parameters go through the application's sanitizer.

    Path parameters only exist once the router has matched, which is after the
    middleware has run, so they are cleaned here. Use it with
    ``APIRouter(route_class=SanitizedRoute)``.
    """

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def sanitized_route_handler(request: Request) -> Response:
            services = getattr(request.app.state, "security", None)
            if services is not None and services.settings.sanitization_enabled:
                params = request.scope.get("path_params") or {}
                request.scope["path_params"] = {
                    name: services.sanitizer.sanitize_string(value) if isinstance(value, str) else value
                    for name, value in params.items()
                }
            return await original_route_handler(request)

        return sanitized_route_handler
