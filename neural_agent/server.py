"""HTTP API server for neural-agent."""

import asyncio
import json
import logging
from importlib.metadata import version as pkg_version

from aiohttp import web

from .adapter import AgentAdapter
from .cancellation import CancellationToken
from .errors import ApiError, WorkspacePolicyError

logger = logging.getLogger("neural_agent")

NDJSON_HEADERS = {
    "Content-Type": "application/x-ndjson; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
UNEXPECTED_ERROR_MESSAGE = "Unexpected server error."


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _ndjson(payload: dict) -> bytes:
    return (json.dumps(payload) + "\n").encode()


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ApiError(400, "INVALID_JSON", "Request body must be valid JSON.")
    return body if isinstance(body, dict) else {}


class AgentServer:
    """Framework-agnostic HTTP API server.

    Delegates every endpoint to the provided AgentAdapter.
    """

    def __init__(
        self,
        adapter: AgentAdapter,
        host: str = "127.0.0.1",
        port: int = 8787,
        token: str | None = None,
    ):
        self.adapter = adapter
        self.host = host
        self.port = port
        self.token = token
        self._runner: web.AppRunner | None = None

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    def _check_auth(self, request: web.Request) -> bool:
        if not self.token:
            return True
        auth = request.headers.get("Authorization", "")
        return auth == f"Bearer {self.token}"

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        for prefix in self.adapter.public_route_prefixes():
            if request.path.startswith(prefix):
                return await handler(request)
        if not self._check_auth(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        return await handler(request)

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ApiError as e:
            return web.json_response(e.to_payload(), status=e.status)
        except WorkspacePolicyError as e:
            return web.json_response({"ok": False, "error": e.to_payload()}, status=400)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            error = ApiError(500, "INTERNAL_SERVER_ERROR", UNEXPECTED_ERROR_MESSAGE)
            return web.json_response(error.to_payload(), status=500)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def _get_version(self) -> str:
        try:
            return pkg_version("neural-agent")
        except Exception:
            return "unknown"

    async def _health(self, _request: web.Request) -> web.Response:
        data = await self.adapter.health()
        data.setdefault("version", self._get_version())
        return web.json_response(data)

    async def _catalog(self, _request: web.Request) -> web.Response:
        return web.json_response(await self.adapter.catalog())

    async def _set_credential(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        result = await self.adapter.set_credential(
            _text(body.get("sessionId")), _text(body.get("providerId")), _text(body.get("apiKey"))
        )
        return web.json_response(result)

    async def _remove_credential(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        result = await self.adapter.remove_credential(_text(body.get("sessionId")), _text(body.get("providerId")))
        return web.json_response(result)

    async def _onboarding_state(self, request: web.Request) -> web.Response:
        return web.json_response(await self.adapter.onboarding_state(dict(request.query)))

    async def _onboarding_reopen(self, request: web.Request) -> web.Response:
        return web.json_response(await self.adapter.reopen_onboarding(await _json_body(request)))

    async def _onboarding_complete(self, request: web.Request) -> web.Response:
        return web.json_response(await self.adapter.complete_onboarding(await _json_body(request)))

    async def _context_memory(self, request: web.Request) -> web.Response:
        lanes = await self.adapter.context_memory_snapshot(
            _text(request.query.get("sessionId")), _text(request.query.get("appContext"))
        )
        return web.json_response({"ok": True, "count": len(lanes), "lanes": lanes})

    async def _list_tools(self, _request: web.Request) -> web.Response:
        tools = await self.adapter.list_tools()
        return web.json_response(tools)

    async def _stream(self, request: web.Request) -> web.StreamResponse:
        body = await _json_body(request)
        # Validation errors still get a plain JSON response here.
        prepared = await self.adapter.prepare_turn(body)

        response = web.StreamResponse(status=200, headers=NDJSON_HEADERS)
        await response.prepare(request)

        cancel = CancellationToken()
        events = self.adapter.stream_turn(prepared, cancel)
        try:
            async for event in events:
                await response.write(_ndjson(event.to_payload()))
        except ConnectionResetError:
            cancel.cancel("client disconnected")
            logger.info("Client disconnected from %s, turn cancelled", request.path)
        except asyncio.CancelledError:
            cancel.cancel("request cancelled")
            raise
        except Exception:
            logger.exception("Stream error")
            await response.write(_ndjson({"type": "error", "content": UNEXPECTED_ERROR_MESSAGE}))
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
        return response

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware, self._error_middleware])
        app.router.add_get("/health", self._health)
        app.router.add_get("/api/health", self._health)
        app.router.add_get("/api/llm/catalog", self._catalog)
        app.router.add_post("/api/credentials/set", self._set_credential)
        app.router.add_post("/api/credentials/remove", self._remove_credential)
        app.router.add_get("/api/onboarding/state", self._onboarding_state)
        app.router.add_post("/api/onboarding/reopen", self._onboarding_reopen)
        app.router.add_post("/api/onboarding/complete", self._onboarding_complete)
        app.router.add_post("/api/llm/stream", self._stream)
        app.router.add_get("/api/debug/context-memory", self._context_memory)
        app.router.add_get("/api/tools", self._list_tools)

        # Register adapter-declared extra routes
        extra = self.adapter.extra_routes()
        if extra:
            for method, path, handler in extra:
                app.router.add_route(method.upper(), path, handler)

        return app

    async def start(self) -> None:
        """Start listening; returns once the site is bound."""
        app = self._build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("neural-agent listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("neural-agent stopped")
