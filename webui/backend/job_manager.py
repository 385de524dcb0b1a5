"""Job lifecycle management: one production session, background tasks, SSE streaming."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable

from cineflow.config import Config
from cineflow.production import Production
from cineflow.store import PlanStore

from .models import JobStatus

log = logging.getLogger(__name__)

JobFactory = Callable[[Production], Awaitable[Any]]


def plan_progress(store: PlanStore) -> dict:
    """Status/progress of every unit, without the (large) image payloads."""
    plan = store.plan
    return {
        "frames": [
            {
                "index": f.index,
                "status": f.status.value,
                "video_status": f.video_status.value,
                "video_progress": f.video_progress,
                "images": [
                    {"id": img.id, "status": img.status.value, "progress": img.progress}
                    for img in f.images
                ],
            }
            for f in plan.frames
        ],
        "transitions": [
            {"status": t.status.value, "progress": t.progress, "type": t.type}
            for t in store.transitions
        ],
    }


class JobManager:
    def __init__(self, production_factory: Callable[[], Production] | None = None) -> None:
        self._jobs: dict[str, dict] = {}
        self._queues: dict[str, asyncio.Queue] = {}
        self._factory = production_factory or (lambda: Production.from_config(Config.load()))
        self._production: Production | None = None
        self._unsubscribe: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def production(self) -> Production:
        if self._production is None:
            self._attach(self._factory())
        return self._production

    def reload_config(self, config: Config) -> None:
        """Rebuild the backends with new keys, keeping the plan and references."""
        old = self._production
        fresh = Production.from_config(config, store=old.store if old else None)
        for image in old.reference_images if old else []:
            fresh.add_reference_image(image)
        self._attach(fresh)

    def _attach(self, production: Production) -> None:
        if self._unsubscribe:
            self._unsubscribe()
        production.progress_cb = self._log_line
        self._unsubscribe = production.store.subscribe(lambda plan, transitions: self._plan_changed())
        self._production = production

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, kind: str, factory: JobFactory) -> str:
        """Start a job as a background task. Returns the job_id immediately."""
        job_id = str(uuid.uuid4())[:8]
        self._queues[job_id] = asyncio.Queue()
        self._jobs[job_id] = {
            "kind": kind,
            "state": "queued",
            "started_at": None,
            "finished_at": None,
            "result": None,
            "error": None,
        }
        production = self.production
        self._jobs[job_id]["_task"] = asyncio.create_task(self._run_job(job_id, factory, production))
        return job_id

    def cancel(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if not job:
            return
        task = job.get("_task")
        if task is not None and not task.done():
            task.cancel()

    def status(self, job_id: str) -> JobStatus | None:
        job = self._jobs.get(job_id)
        if not job:
            return None
        return JobStatus(
            job_id=job_id,
            kind=job["kind"],
            state=job["state"],
            started_at=job["started_at"],
            finished_at=job["finished_at"],
            result=job["result"],
            error=job["error"],
        )

    async def stream(self, job_id: str) -> AsyncIterator[dict]:
        """Async generator: yields SSE message dicts until job completes."""
        queue = self._queues.get(job_id)
        if queue is None:
            return
        while True:
            msg = await queue.get()
            yield msg
            if msg.get("type") == "status":
                break

    async def shutdown(self) -> None:
        tasks = [j["_task"] for j in self._jobs.values() if not j["_task"].done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _running_queues(self) -> list[asyncio.Queue]:
        return [self._queues[jid] for jid, j in self._jobs.items() if j["state"] == "running"]

    def _log_line(self, text: str) -> None:
        for queue in self._running_queues():
            queue.put_nowait({"type": "log", "text": text, "ts": time.time()})

    def _plan_changed(self) -> None:
        queues = self._running_queues()
        if not queues:
            return
        snapshot = plan_progress(self._production.store)
        for queue in queues:
            queue.put_nowait({"type": "plan", "progress": snapshot, "ts": time.time()})

    async def _run_job(self, job_id: str, factory: JobFactory, production: Production) -> None:
        job = self._jobs[job_id]
        queue = self._queues[job_id]
        job["state"] = "running"
        job["started_at"] = time.time()
        try:
            result = await factory(production)
        except asyncio.CancelledError:
            job["state"] = "cancelled"
            job["finished_at"] = time.time()
            queue.put_nowait({"type": "status", "state": "cancelled"})
            raise
        except Exception as exc:
            log.exception("Job %s failed", job_id)
            job["state"] = "failed"
            job["error"] = str(exc)
            job["finished_at"] = time.time()
            queue.put_nowait({"type": "status", "state": "failed", "error": str(exc)})
            return

        job["state"] = "done"
        job["result"] = _describe(result)
        job["finished_at"] = time.time()
        queue.put_nowait({"type": "status", "state": "done", "result": job["result"]})


def _describe(result: Any) -> str | None:
    if result is None:
        return None
    return str(getattr(result, "value", result))


# Singleton
job_manager = JobManager()
