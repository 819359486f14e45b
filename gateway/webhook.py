"""
Webhook caller - lets external systems run an agent over HTTP.

Endpoints:
    GET  /webhook/health          -> {"status": "ok"}
    POST /webhook/{group}         -> {"status", "result", "model"}

POST requires ``Authorization: Bearer <token>`` and a JSON body
``{"message": "...", "userId": "..."}``. Runs go through the same
ExecutionCoordinator as chat messages, so the group lock and the global
agent cap apply.
"""

import hmac
import json
import logging
from typing import Iterable, Optional

from aiohttp import web

from gateway.error_messages import humanize_error
from gateway.execution import AgentExecutionError, AgentRunParams, ExecutionCoordinator
from gateway.session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3003


class WebhookServer:
    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        token: str,
        groups: Iterable[str],
        sessions: Optional[SessionStore] = None,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
    ):
        if not token:
            raise ValueError("Webhook server requires a token")
        self.coordinator = coordinator
        self.token = token
        self.groups = set(groups)
        self.sessions = sessions
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    def _authorized(self, request: web.Request) -> bool:
        header = request.headers.get("Authorization", "")
        return hmac.compare_digest(header.encode(), f"Bearer {self.token}".encode())

    async def handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /webhook/health."""
        return web.json_response({"status": "ok"})

    async def handle_run(self, request: web.Request) -> web.Response:
        """Handle POST /webhook/{group}."""
        if not self._authorized(request):
            return web.json_response({"error": "Unauthorized"}, status=401)

        group_key = request.match_info["group"]
        if group_key not in self.groups:
            return web.json_response({"error": f'Group "{group_key}" not found'}, status=404)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        message = body.get("message")
        if not message or not isinstance(message, str):
            return web.json_response({"error": 'Missing "message" field'}, status=400)
        user_id = body.get("userId")
        if user_id is not None and not isinstance(user_id, str):
            return web.json_response({"error": '"userId" must be a string'}, status=400)

        params = AgentRunParams(
            group_key=group_key,
            channel_id=f"webhook:{group_key}",
            prompt=message,
            user_id=user_id,
            session_id=self.sessions.get(group_key) if self.sessions else None,
            source="webhook",
        )
        try:
            result = await self.coordinator.execute_agent_run(params)
        except AgentExecutionError as e:
            logger.warning("Webhook run for %s failed (%s): %s", group_key, e.kind, e)
            return web.json_response({"error": humanize_error(e)}, status=500)

        output = result.output
        return web.json_response({
            "status": output.status,
            "result": output.result,
            "model": output.model,
        })

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get("/webhook/health", self.handle_health)
        app.router.add_post("/webhook/{group}", self.handle_run)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Webhook server listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Webhook server stopped")
