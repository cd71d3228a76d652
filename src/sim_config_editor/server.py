"""Simulation Config Editor 的 HTTP + SSE 服务器。

路由：
    GET  /api/run?configFile=NAME       运行外部工具并流式推送输出
    GET  /api/events                    文件变更通知（SSE）
    GET  /api/configs                   列出配置文件
    GET  /api/config/{filename}         读取配置
    POST /api/config/{filename}         保存配置
    POST /api/config/{filename}/duplicate  复制配置
    GET  /health
    GET  /  和 /static/*                可选的前端页面
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from .config import Config, get_config
from .errors import ConfigStoreError
from .events import ConnectedEvent, RunRequest
from .orchestrator import RunRegistry
from .runtime import (
    ChangeNotifier,
    ConfigWatcher,
    EventStreamChannel,
    ProcessRunner,
    ProcessSpec,
    RunSession,
    SubscriberRegistry,
)
from .store import ConfigStore

__all__ = ["EditorServer", "REQ_ID", "build_run_spec"]

logger = logging.getLogger(__name__)

# 请求日志中间件写入的短请求 ID
REQ_ID = web.RequestKey("req_id", str)


def build_run_spec(config: Config, request: RunRequest) -> ProcessSpec:
    """运行器命令，配置文件名作为最后一个参数。"""
    env = dict(os.environ)
    env.setdefault("NODE_ENV", "production")
    return ProcessSpec(
        argv=[*config.runner, request.config_identifier],
        cwd=config.runner_cwd,
        env=env,
        artifact=config.runner_artifact,
    )


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


class EditorServer:
    """持有 aiohttp 应用和所有长生命周期组件。

    组件在这里创建一次并由所有请求共享：进程运行器、运行注册表、
    订阅者注册表、变更通知器和配置监视表。
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        runner: ProcessRunner | None = None,
        registry: RunRegistry | None = None,
        subscribers: SubscriberRegistry | None = None,
    ) -> None:
        self.config = config or get_config()
        self.store = ConfigStore(self.config.config_dir)
        self.runner = runner or ProcessRunner(run_timeout=self.config.run_timeout)
        self.registry = registry or RunRegistry()
        self.subscribers = subscribers or SubscriberRegistry()
        self.notifier = ChangeNotifier(self.subscribers, debounce=self.config.debounce)
        self.watcher = ConfigWatcher(
            self.config.config_dir,
            self.notifier,
            interval=self.config.watch_interval,
        )

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        self._runner: web.AppRunner | None = None
        self._port: int = self.config.port

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self.config.host}:{self._port}"

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        request[REQ_ID] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/api/run", self._handle_run)
        r.add_get("/api/events", self._handle_events)
        r.add_get("/api/configs", self._handle_list_configs)
        r.add_get("/api/config/{filename}", self._handle_get_config)
        r.add_post("/api/config/{filename}", self._handle_save_config)
        r.add_post("/api/config/{filename}/duplicate", self._handle_duplicate_config)

        static_dir = self.config.static_dir
        if static_dir is not None and static_dir.is_dir():
            r.add_get("/", self._handle_index)
            r.add_static("/static/", static_dir)
        elif static_dir is not None:
            logger.warning(f"Static directory not found: {static_dir}")

    # ── Lifecycle ──

    async def start(self) -> int:
        """开始监听，返回实际端口。"""
        self._runner = web.AppRunner(self._app, handler_cancellation=True)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()

        addresses = self._runner.addresses
        if addresses:
            self._port = addresses[0][1]
        logger.info(f"Server running at {self.url}")
        return self._port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.debug("Server stopped")

    async def _on_shutdown(self, app: web.Application) -> None:
        """在连接断开前取消运行并停止监视器。"""
        cancelled = self.registry.cancel_all()
        if cancelled:
            logger.info(f"Shutdown: cancelled {cancelled} run(s)")
        for info in self.registry.list_active():
            try:
                await asyncio.wait_for(asyncio.shield(info.task), timeout=5.0)
            except asyncio.CancelledError:
                logger.debug(f"Run cancelled during shutdown: {info}")
            except asyncio.TimeoutError:
                logger.warning(f"Run did not finish within 5s of shutdown: {info}")
            except Exception as e:
                logger.debug(f"Run task ended with error during shutdown: {e}")
        await self.watcher.close()
        await self.notifier.close()
        for _token, channel in self.subscribers.snapshot():
            await channel.close()

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "active_runs": self.registry.active_count,
            "subscribers": len(self.subscribers),
            "watched": self.watcher.watched,
        })

    async def _handle_index(self, request: web.Request) -> web.StreamResponse:
        index = self.config.static_dir / "index.html"
        if not index.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(index)

    async def _handle_run(self, request: web.Request) -> web.StreamResponse:
        try:
            run_request = RunRequest(config_identifier=request.query.get("configFile", ""))
        except ValidationError:
            return _error("configFile parameter required", 400)

        channel = EventStreamChannel(request, heartbeat_interval=self.config.heartbeat_interval)
        session = RunSession(
            run_request,
            channel,
            self.runner,
            build_run_spec(self.config, run_request),
        )
        task = asyncio.current_task()
        assert task is not None
        self.registry.register(session.session_id, run_request.config_identifier, task)
        try:
            await session.run()
        finally:
            self.registry.unregister(session.session_id)
        return channel.response

    async def _handle_events(self, request: web.Request) -> web.StreamResponse:
        channel = EventStreamChannel(request, heartbeat_interval=self.config.heartbeat_interval)
        await channel.open()
        token = self.subscribers.add(channel)
        logger.info(f"File watch client connected req={request.get(REQ_ID)} subscribers={len(self.subscribers)}")
        waiters = [
            asyncio.ensure_future(channel.wait_disconnected()),
            asyncio.ensure_future(channel.wait_closed()),
        ]
        try:
            await channel.send(ConnectedEvent())
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await channel.close()
            self.subscribers.remove(token)
            logger.info(f"File watch client disconnected req={request.get(REQ_ID)} subscribers={len(self.subscribers)}")
        return channel.response

    async def _handle_list_configs(self, request: web.Request) -> web.Response:
        try:
            return web.json_response(self.store.list_configs())
        except ConfigStoreError as e:
            return _error(str(e), e.status)

    async def _handle_get_config(self, request: web.Request) -> web.Response:
        filename = request.match_info["filename"]
        try:
            data = self.store.read(filename)
        except ConfigStoreError as e:
            return _error(str(e), e.status)
        self.watcher.watch(filename)
        return web.json_response(data)

    async def _handle_save_config(self, request: web.Request) -> web.Response:
        filename = request.match_info["filename"]
        try:
            body: Any = await request.json()
        except json.JSONDecodeError as e:
            return _error(f"Invalid JSON body: {e}", 400)

        try:
            self.store.write(filename, body)
        except ConfigStoreError as e:
            return _error(str(e), e.status)

        if not self.watcher.watch(filename):
            self.watcher.acknowledge(filename)
        await self.notifier.notify(filename)
        return web.json_response({"success": True})

    async def _handle_duplicate_config(self, request: web.Request) -> web.Response:
        filename = request.match_info["filename"]
        try:
            body: Any = await request.json()
        except json.JSONDecodeError:
            body = {}

        new_name = body.get("newName") if isinstance(body, dict) else None
        if not isinstance(new_name, str) or not new_name.strip():
            return _error("newName is required and must be a non-empty string", 400)

        try:
            target = self.store.duplicate(filename, new_name)
        except ConfigStoreError as e:
            return _error(str(e), e.status)

        await self.notifier.notify(target)
        return web.json_response({"success": True})
