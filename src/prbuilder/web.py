import asyncio
import json
import logging
from typing import Any, Dict, Tuple

import aiohttp
from prometheus_client import core
from prometheus_client.exposition import generate_latest
from sanic import Sanic, response

from prbuilder.config import SETTINGS, Settings
from prbuilder.events import EventBroadcaster
from prbuilder.model import DaemonConfig
from prbuilder.scheduler import WatchScheduler, create_watchers

logger = logging.getLogger("prbuilder")


def status_context(scheduler: WatchScheduler) -> Tuple[int, Dict[str, Any]]:
    halted = scheduler.halted()
    body = {
        "status": "halted" if halted else "ok",
        "watchers": {
            watcher.repository: watcher.state.value
            for watcher in scheduler.watchers.values()
        },
        "halted": {watcher.repository: watcher.halt_reason for watcher in halted},
    }
    return (503 if halted else 200), body


def state_context(scheduler: WatchScheduler) -> Dict[str, Any]:
    return {
        "stopping": scheduler.stopping,
        "watchers": [watcher.describe() for watcher in scheduler.watchers.values()],
    }


def create_app(config: DaemonConfig, settings: Settings = SETTINGS) -> Sanic:
    app = Sanic("prbuilder")
    app.ctx.broadcaster = EventBroadcaster()

    @app.listener("before_server_start")
    async def init(app, loop):
        logger.debug("Creating aiohttp session")
        app.ctx.aiohttp_session = aiohttp.ClientSession()
        watchers = create_watchers(
            config,
            app.ctx.aiohttp_session,
            settings=settings,
            broadcaster=app.ctx.broadcaster,
        )
        app.ctx.scheduler = WatchScheduler(
            watchers, grace_seconds=settings.SHUTDOWN_GRACE
        )
        app.ctx.scheduler.start()

    @app.listener("before_server_stop")
    async def teardown(app, loop):
        await app.ctx.scheduler.shutdown()
        await app.ctx.aiohttp_session.close()

    @app.get("/status")
    async def status(request):
        code, body = status_context(app.ctx.scheduler)
        return response.json(body, status=code)

    @app.get("/state")
    async def state(request):
        return response.json(state_context(app.ctx.scheduler))

    @app.get("/metrics")
    async def metrics(request):
        return response.raw(
            generate_latest(core.REGISTRY),
            content_type="text/plain; version=0.0.4",
        )

    @app.get("/events")
    async def events(request):
        queue = await app.ctx.broadcaster.subscribe()

        async def stream_fn(stream_response):
            try:
                await stream_response.write("event: ready\ndata: {}\n\n")
                while True:
                    try:
                        payload = await asyncio.wait_for(queue.get(), timeout=20.0)
                    except asyncio.TimeoutError:
                        await stream_response.write(": keepalive\n\n")
                        continue
                    body = json.dumps(payload, separators=(",", ":"))
                    await stream_response.write(f"event: decision\ndata: {body}\n\n")
            except asyncio.CancelledError:
                raise
            finally:
                await app.ctx.broadcaster.unsubscribe(queue)

        return response.ResponseStream(
            stream_fn,
            content_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app
