import uuid
import asyncio
import logging
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field
from datetime import datetime, timedelta

from downpour.config import WorkloadSpec
from downpour.core import LoadDriver

logger = logging.getLogger(__name__)

RETENTION = timedelta(hours=24)
CLEANUP_INTERVAL_S = 3600


class RunState(BaseModel):
    id: str
    status: str  # "pending", "running", "completed", "failed"
    progress: float = 0.0
    completed_operations: int = 0
    scheduled_operations: int = 0
    spec: WorkloadSpec
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    report: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class RunManager:
    def __init__(self):
        self.runs: Dict[str, RunState] = {}
        self._drivers: Dict[str, LoadDriver] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
        for driver in self._drivers.values():
            driver.request_stop("server shutting down")
        pending = [t for t in self._tasks.values() if not t.done()]
        if self._cleanup_task is not None:
            pending.append(self._cleanup_task)
        await asyncio.gather(*pending, return_exceptions=True)
        self._cleanup_task = None

    def create_run(self, spec: WorkloadSpec) -> str:
        run_id = str(uuid.uuid4())
        run = RunState(
            id=run_id,
            status="pending",
            spec=spec,
            scheduled_operations=spec.scheduled_operations,
        )
        self.runs[run_id] = run

        def progress_callback(completed, total, worker_id):
            run.completed_operations = completed
            run.progress = (completed / total) * 100 if total > 0 else 0

        driver = LoadDriver(spec, use_progress_bar=False, progress_callback=progress_callback)
        self._drivers[run_id] = driver
        self._tasks[run_id] = asyncio.create_task(self._run(run_id, driver))
        return run_id

    async def _run(self, run_id: str, driver: LoadDriver):
        run = self.runs[run_id]
        run.status = "running"
        try:
            report = await driver.run()
            run.report = report.to_dict()
            run.status = "completed"
            run.progress = 100.0
        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}")
            run.status = "failed"
            run.error = str(e)
        finally:
            run.completed_at = datetime.now()
            self._drivers.pop(run_id, None)

    def get_run(self, run_id: str) -> Optional[RunState]:
        return self.runs.get(run_id)

    def list_runs(self) -> List[RunState]:
        return sorted(self.runs.values(), key=lambda x: x.created_at, reverse=True)

    def stop_run(self, run_id: str) -> bool:
        driver = self._drivers.get(run_id)
        if driver is None:
            return False
        driver.request_stop("stop requested via API")
        return True

    def delete_run(self, run_id: str):
        task = self._tasks.pop(run_id, None)
        if task is not None and not task.done():
            task.cancel()
        self._drivers.pop(run_id, None)
        self.runs.pop(run_id, None)

    async def _cleanup_loop(self):
        """Periodically forget finished runs."""
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL_S)
            now = datetime.now()
            expired = [
                run_id
                for run_id, run in self.runs.items()
                if run.completed_at is not None and now - run.completed_at > RETENTION
            ]
            for run_id in expired:
                logger.info(f"Cleaning up old run: {run_id}")
                self.delete_run(run_id)
