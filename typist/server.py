"""HTTP control surface for the typing engine.

The owning application calls this server on behalf of its users. The
caller identity comes from the X-Owner-Id header; X-Plan-Tier optionally
selects the plan tier whose limits apply to the request.

  POST /jobs/start      {text, durationMinutes, typingProfile, documentRef, testWPM?}
  POST /jobs/pause      {jobId}
  POST /jobs/resume     {jobId}
  POST /jobs/stop       {jobId}
  GET  /jobs            most recent jobs
  GET  /jobs/stats      ?range=7d|30d|all
  GET  /jobs/{job_id}   progress plus recent events
  GET  /jobs/{job_id}/stream  server-sent progress events until the job ends
  GET  /health
"""

from __future__ import annotations

import asyncio
import json
import logging

from aiohttp import web

from typist.errors import EngineError, NotFoundError
from typist.lifecycle import JobManager
from typist.models import JobStatus

log = logging.getLogger(__name__)

OWNER_HEADER = "X-Owner-Id"
TIER_HEADER = "X-Plan-Tier"

STREAM_FIELDS = ("status", "currentIndex", "totalChars", "durationMinutes")


def _error(message: str, status: int, code: str | None = None) -> web.Response:
    body = {"error": message}
    if code:
        body["code"] = code
    return web.json_response(body, status=status)


def _stream_frame(job_id: str, progress: dict) -> bytes:
    data = {"jobId": job_id, **{key: progress[key] for key in STREAM_FIELDS}}
    return f"data: {json.dumps(data)}\n\n".encode()


class ControlServer:
    """aiohttp server exposing the job control operations."""

    def __init__(
        self,
        jobs: JobManager,
        host: str = "127.0.0.1",
        port: int = 8430,
        stream_poll_seconds: float = 1.0,
    ) -> None:
        self._jobs = jobs
        self._host = host
        self._port = port
        self._stream_poll_seconds = stream_poll_seconds
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        """Application with all routes, not yet bound to a port."""
        app = web.Application()
        app.router.add_post("/jobs/start", self._handle_start)
        app.router.add_post("/jobs/pause", self._handle_pause)
        app.router.add_post("/jobs/resume", self._handle_resume)
        app.router.add_post("/jobs/stop", self._handle_stop)
        app.router.add_get("/jobs", self._handle_list)
        app.router.add_get("/jobs/stats", self._handle_stats)
        app.router.add_get("/jobs/{job_id}", self._handle_job)
        app.router.add_get("/jobs/{job_id}/stream", self._handle_stream)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        log.info("Control server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        """Stop the HTTP server and release resources."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # -- Helpers -------------------------------------------------------------

    async def _call(self, action: str, coro) -> tuple[object, web.Response | None]:
        """Await a JobManager call, mapping failures to JSON error responses.

        Returns (result, None) on success, (None, response) on failure.
        """
        try:
            return await coro, None
        except EngineError as exc:
            return None, _error(exc.message, exc.status, exc.code)
        except Exception:
            log.exception("%s failed", action)
            return None, _error("Internal error", 500)

    async def _json_body(self, request: web.Request) -> tuple[dict | None, web.Response | None]:
        try:
            data = await request.json()
        except Exception:
            return None, _error("Invalid JSON", 400)
        if not isinstance(data, dict):
            return None, _error("Invalid JSON", 400)
        return data, None

    def _job_id(self, data: dict) -> str | None:
        job_id = data.get("jobId")
        return job_id if isinstance(job_id, str) and job_id else None

    # -- Handlers ------------------------------------------------------------

    async def _handle_start(self, request: web.Request) -> web.Response:
        owner_id = request.headers.get(OWNER_HEADER)
        if not owner_id:
            return _error("Unauthorized", 401)
        data, err = await self._json_body(request)
        if err:
            return err

        job, err = await self._call(
            "start",
            self._jobs.start(
                owner_id,
                data.get("text"),
                data.get("durationMinutes"),
                data.get("typingProfile"),
                data.get("documentRef"),
                test_wpm=data.get("testWPM"),
                tier=request.headers.get(TIER_HEADER),
            ),
        )
        if err:
            return err
        return web.json_response({"jobId": job.id})

    async def _handle_control(self, request: web.Request, action: str) -> web.Response:
        owner_id = request.headers.get(OWNER_HEADER)
        if not owner_id:
            return _error("Unauthorized", 401)
        data, err = await self._json_body(request)
        if err:
            return err
        job_id = self._job_id(data)
        if job_id is None:
            return _error("Job ID is required", 400)

        if action == "resume":
            coro = self._jobs.resume(owner_id, job_id, tier=request.headers.get(TIER_HEADER))
        else:
            coro = getattr(self._jobs, action)(owner_id, job_id)
        _, err = await self._call(action, coro)
        if err:
            return err
        return web.json_response({"success": True})

    async def _handle_pause(self, request: web.Request) -> web.Response:
        return await self._handle_control(request, "pause")

    async def _handle_resume(self, request: web.Request) -> web.Response:
        return await self._handle_control(request, "resume")

    async def _handle_stop(self, request: web.Request) -> web.Response:
        return await self._handle_control(request, "stop")

    async def _handle_list(self, request: web.Request) -> web.Response:
        owner_id = request.headers.get(OWNER_HEADER)
        if not owner_id:
            return _error("Unauthorized", 401)
        jobs, err = await self._call(
            "list", self._jobs.list_jobs(owner_id, tier=request.headers.get(TIER_HEADER))
        )
        if err:
            return err
        return web.json_response({"jobs": jobs})

    async def _handle_stats(self, request: web.Request) -> web.Response:
        owner_id = request.headers.get(OWNER_HEADER)
        if not owner_id:
            return _error("Unauthorized", 401)
        range_ = request.query.get("range", "30d")
        stats, err = await self._call("stats", self._jobs.job_stats(owner_id, range_))
        if err:
            return err
        return web.json_response(stats)

    async def _handle_job(self, request: web.Request) -> web.Response:
        owner_id = request.headers.get(OWNER_HEADER)
        if not owner_id:
            return _error("Unauthorized", 401)
        job_id = request.match_info["job_id"]
        detail, err = await self._call(
            "job detail", self._jobs.get_job_detail(owner_id, job_id)
        )
        if err:
            return err
        return web.json_response(detail)

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        """GET /jobs/{job_id}/stream

        Sends the job's progress as server-sent events, one per poll, and
        closes after the first event that shows a terminal status.
        """
        owner_id = request.headers.get(OWNER_HEADER)
        if not owner_id:
            return _error("Unauthorized", 401)
        job_id = request.match_info["job_id"]
        progress, err = await self._call("stream", self._jobs.progress(owner_id, job_id))
        if err:
            return err

        resp = web.StreamResponse(
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
        )
        resp.content_type = "text/event-stream"
        await resp.prepare(request)
        try:
            while True:
                await resp.write(_stream_frame(job_id, progress))
                if JobStatus(progress["status"]).is_terminal:
                    break
                await asyncio.sleep(self._stream_poll_seconds)
                try:
                    progress = await self._jobs.progress(owner_id, job_id)
                except NotFoundError:
                    break  # deleted by the cleanup sweep
            await resp.write_eof()
        except ConnectionResetError:
            log.debug("Progress stream for job %s closed by client", job_id)
        return resp

    async def _handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        return web.json_response({"ok": True})
