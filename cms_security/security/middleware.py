"""ASGI middleware running the request security pipeline."""

import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..observability.logging import bind_request_context, reset_request_context
from .exceptions import SecurityPipelineError
from .pipeline import BodyKind, RequestContext, RequestSecurityPipeline

JSON_CONTENT_TYPES = ("application/json",)
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _decode_headers(scope: Scope) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for name, value in scope.get("headers", []):
        headers.setdefault(name.decode("latin-1").lower(), value.decode("latin-1"))
    return headers


def _content_type(headers: Dict[str, str]) -> str:
    return headers.get("content-type", "").split(";")[0].strip().lower()


def _route_path(scope: Scope) -> Optional[str]:
    """Path template of the route the router matched, if any."""
    route = scope.get("route")
    return getattr(route, "path", None)


def _replay(body: bytes, receive: Receive, disconnect: Optional[Message] = None) -> Receive:
    """A receive callable that yields the buffered body once."""
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        if disconnect is not None:
            return disconnect
        return await receive()

    return replay


class RequestSecurityMiddleware:
    """
    Runs every HTTP request through ``RequestSecurityPipeline``.

    A pure ASGI middleware rather than ``BaseHTTPMiddleware`` so the sanitized
    query string and body can be handed to the application in place of the
    originals.
    """

    def __init__(self, app: ASGIApp, pipeline: RequestSecurityPipeline):
        self.app = app
        self.pipeline = pipeline

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if self.pipeline.is_exempt(scope["path"]):
            await self.app(scope, receive, self._sender(None, send))
            return

        client = scope.get("client")
        ctx = self.pipeline.create_context(
            method=scope["method"],
            path=scope["path"],
            headers=_decode_headers(scope),
            query_pairs=parse_qsl(scope.get("query_string", b"").decode("latin-1"), keep_blank_values=True),
            peer=client[0] if client else None,
        )

        tokens = bind_request_context(ctx.request_id)
        try:
            await self._run(ctx, scope, receive, send)
        finally:
            reset_request_context(tokens)

    async def _run(self, ctx: RequestContext, scope: Scope, receive: Receive, send: Send) -> None:
        sender = self._sender(ctx, send)
        disconnect: Optional[Message] = None

        try:
            try:
                self.pipeline.check_access(ctx)
                await self.pipeline.check_rate_limit(ctx)
                disconnect = await self._read_body(ctx, receive)
                self.pipeline.scan(ctx)
                self.pipeline.sanitize(ctx)
            except SecurityPipelineError as e:
                self.pipeline.reject(ctx, e)
                response = JSONResponse(e.to_body(), status_code=e.status_code, headers=e.response_headers())
                await response(scope, receive, sender)
                return

            scope, receive = self._prepare_downstream(ctx, scope, receive, disconnect)
            try:
                await self.app(scope, receive, sender)
            except Exception as e:
                body = self.pipeline.handle_exception(ctx, e)
                if ctx.response_started:
                    raise
                await JSONResponse(body, status_code=500)(scope, receive, sender)
            finally:
                ctx.route_path = _route_path(scope)
                self.pipeline.mark_handled(ctx)
        finally:
            await self.pipeline.finish(ctx)

    def _sender(self, ctx: Optional[RequestContext], send: Send) -> Send:
        async def sender(message: Message) -> None:
            if message["type"] == "http.response.start":
                if ctx is not None:
                    ctx.response_started = True
                    ctx.status_code = message["status"]
                message = dict(message)
                message["headers"] = self.pipeline.response_headers(ctx, list(message.get("headers", [])))
            await send(message)

        return sender

    async def _read_body(self, ctx: RequestContext, receive: Receive) -> Optional[Message]:
        """
        Buffer and parse the request body, enforcing the size limit.

        Returns the disconnect message if the client went away while the body
        was being read.
        """
        content_type = _content_type(ctx.headers)
        if content_type.startswith("multipart/"):
            ctx.body_kind = BodyKind.STREAM
            return None

        length = ctx.headers.get("content-length", "")
        if length.isdigit():
            self.pipeline.check_body_size(int(length))

        chunks: List[bytes] = []
        size = 0
        disconnect: Optional[Message] = None
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                disconnect = message
                break
            chunk = message.get("body", b"")
            size += len(chunk)
            self.pipeline.check_body_size(size)
            chunks.append(chunk)
            more_body = message.get("more_body", False)

        raw = b"".join(chunks)
        ctx.raw_body = raw
        ctx.body, ctx.body_kind = self._parse_body(raw, content_type)
        return disconnect

    @staticmethod
    def _parse_body(raw: bytes, content_type: str) -> Tuple[Any, BodyKind]:
        if not raw:
            return None, BodyKind.NONE
        if content_type in JSON_CONTENT_TYPES or content_type.endswith("+json"):
            try:
                return json.loads(raw), BodyKind.JSON
            except (ValueError, RecursionError):
                return raw, BodyKind.RAW
        if content_type == FORM_CONTENT_TYPE:
            return parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True), BodyKind.FORM
        return raw, BodyKind.RAW

    @staticmethod
    def _prepare_downstream(ctx: RequestContext,
                            scope: Scope,
                            receive: Receive,
                            disconnect: Optional[Message]) -> Tuple[Scope, Receive]:
        """Hand the sanitized query and the buffered body to the application."""
        if ctx.query_changed or ctx.body_changed:
            scope = dict(scope)
        if ctx.query_changed:
            scope["query_string"] = urlencode(ctx.query_pairs).encode("latin-1")

        if ctx.body_kind == BodyKind.STREAM:
            return scope, receive

        body = ctx.raw_body
        if ctx.body_changed:
            if ctx.body_kind == BodyKind.JSON:
                body = json.dumps(ctx.body, ensure_ascii=False).encode("utf-8")
            else:
                body = urlencode(ctx.body).encode("latin-1")
            scope["headers"] = [
                (name, value) for name, value in scope.get("headers", [])
                if name.lower() != b"content-length"
            ] + [(b"content-length", str(len(body)).encode("latin-1"))]

        return scope, _replay(body, receive, disconnect)
