import asyncio
import logging

import aiohttp
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .aggregator import OutcomeSink, OutcomeTally
from .config import HealthPolicy, WorkloadSpec
from .deadline import DeadlineController
from .errors import TargetUnreachableError
from .issuer import RequestIssuer
from .metrics import build_report
from .models import (
    Operation,
    OperationKind,
    ProgressCallback,
    Report,
    RunStatus,
    WorkerAssignment,
)
from .throttling import TokenBucket
from .utils import now

logger = logging.getLogger(__name__)

# Bound on how long cancelled stragglers get to unwind
CANCEL_SETTLE_S = 0.25


class LoadDriver:
    def __init__(
        self,
        spec: WorkloadSpec,
        use_progress_bar: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        self.spec = spec
        self.use_progress_bar = use_progress_bar
        self.progress_callback = progress_callback

        self._deadline: DeadlineController | None = None
        self._pending_stop: str | None = None
        self._progress: Progress | None = None
        self._progress_task = None

        logger.info(
            f"Initialized LoadDriver for {spec.base_url}: "
            f"writers={spec.writers}, readers={spec.readers}, listers={spec.listers}, "
            f"iterations={spec.iterations_per_worker}, budget={spec.global_budget_s}s, "
            f"request_timeout={spec.request_timeout_s}s"
        )

    def request_stop(self, reason: str = "stop requested") -> None:
        """Ask every worker to stop before its next dispatch."""
        if self._deadline is not None:
            self._deadline.request_stop(reason)
        else:
            self._pending_stop = reason

    # ────────────────────────────────
    # Main Runner
    # ────────────────────────────────

    async def run(self) -> Report:
        spec = self.spec
        logger.info("Starting Downpour run...")

        connector = aiohttp.TCPConnector(limit=0)
        timeout = aiohttp.ClientTimeout(total=spec.request_timeout_s)
        async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
            issuer = RequestIssuer(session, spec.base_url, spec.request_timeout_s, spec.headers)

            unreachable = await self._check_health(issuer)
            if unreachable is not None:
                return self._skipped_report()

            read_targets = await self._seed_read_targets(issuer)
            return await self._execute(issuer, read_targets)

    async def _check_health(self, issuer: RequestIssuer) -> str | None:
        policy = self.spec.health_policy
        if policy is HealthPolicy.OFF:
            return None
        detail = await issuer.probe_health()
        if detail is None:
            logger.info(f"Target {self.spec.base_url} is healthy")
            return None
        if policy is HealthPolicy.FAIL:
            raise TargetUnreachableError(self.spec.base_url, detail)
        logger.warning(f"Target {self.spec.base_url} unreachable ({detail}), skipping run")
        return detail

    def _skipped_report(self) -> Report:
        tally = OutcomeTally(now()).freeze()
        return build_report(tally, status=RunStatus.SKIPPED, wall_clock_s=0.0, dispatched=0, dropped=0)

    async def _seed_read_targets(self, issuer: RequestIssuer) -> list[tuple[str, int]]:
        spec = self.spec
        if spec.readers == 0:
            return []
        targets = []
        for size in spec.payload_sizes:
            key = f"{spec.key_prefix}/seed-{size}"
            if not await issuer.put_object(spec.bucket, key, size):
                logger.warning(f"Could not seed {key}; reads of it will fail")
            targets.append((key, size))
        logger.info(f"Seeded {len(targets)} read target(s)")
        return targets

    async def _execute(self, issuer: RequestIssuer, read_targets: list[tuple[str, int]]) -> Report:
        spec = self.spec
        sink = OutcomeSink(spec.sink_capacity)
        deadline = DeadlineController(spec.global_budget_s, spec.grace_period_s)
        self._deadline = deadline

        bucket = None
        if spec.rate_limit_per_s:
            bucket = TokenBucket(spec.rate_limit_per_s, ramp_up_s=spec.rate_ramp_up_s)
            await bucket.start()

        assignments = spec.assignments()
        t0 = now()
        tally = OutcomeTally(t0)
        collector = asyncio.create_task(self._collect(sink, tally))

        deadline.start()
        if self._pending_stop is not None:
            deadline.request_stop(self._pending_stop)
        self._start_progress()

        logger.info(f"Starting {len(assignments)} workers ({spec.scheduled_operations} operations scheduled)")
        workers = [
            asyncio.create_task(
                self._worker(a, issuer, sink, deadline, bucket, read_targets),
                name=f"downpour-{a.tag}",
            )
            for a in assignments
        ]

        try:
            cut_short, abandoned = await self._join(workers, deadline)
        except asyncio.CancelledError:
            for w in workers:
                w.cancel()
            collector.cancel()
            await asyncio.gather(*workers, collector, return_exceptions=True)
            raise
        finally:
            deadline.stop()
            if bucket is not None:
                await bucket.stop()
            self._stop_progress()

        wall_clock = now() - t0
        # Every worker has exited or been cancelled past this point
        sink.close()
        await collector
        tally.freeze()

        if not cut_short:
            status = RunStatus.COMPLETED
        elif deadline.expired:
            status = RunStatus.DEADLINE_EXCEEDED
        else:
            status = RunStatus.STOPPED

        faulted = sum(1 for w in workers if w.done() and not w.cancelled() and w.result() is False)
        return build_report(
            tally,
            status=status,
            wall_clock_s=wall_clock,
            dispatched=sink.dispatched,
            dropped=sink.dropped,
            workers_spawned=len(workers),
            workers_faulted=faulted,
            workers_abandoned=abandoned,
            expected_classes=self._expected_classes(),
            written_bytes=sink.written_bytes,
        )

    async def _join(self, workers: list[asyncio.Task], deadline: DeadlineController) -> tuple[bool, int]:
        """Wait for every worker, bounded by the deadline plus its grace period.

        Returns (cut_short, abandoned).
        """
        pending = set(workers)
        fired = asyncio.create_task(deadline.wait())
        try:
            while pending and not deadline.is_set():
                _, pending = await asyncio.wait(pending | {fired}, return_when=asyncio.FIRST_COMPLETED)
                pending.discard(fired)
        finally:
            fired.cancel()

        if not pending:
            return False, 0

        logger.info(
            f"Waiting up to {deadline.grace_period_s:.2f}s for {len(pending)} worker(s) "
            f"to finish in-flight requests"
        )
        _, pending = await asyncio.wait(pending, timeout=deadline.grace_period_s)
        if not pending:
            return True, 0

        logger.warning(f"{len(pending)} worker(s) still busy after the grace period, abandoning them")
        for w in pending:
            w.cancel()
        await asyncio.wait(pending, timeout=CANCEL_SETTLE_S)
        return True, len(pending)

    async def _collect(self, sink: OutcomeSink, tally: OutcomeTally) -> None:
        async for batch in sink.batches():
            tally.extend(batch)

    # ────────────────────────────────
    # Worker Logic
    # ────────────────────────────────

    async def _worker(
        self,
        assignment: WorkerAssignment,
        issuer: RequestIssuer,
        sink: OutcomeSink,
        deadline: DeadlineController,
        bucket: TokenBucket | None,
        read_targets: list[tuple[str, int]],
    ) -> bool:
        """Returns False if the worker faulted."""
        tag = assignment.tag
        try:
            for iteration in range(assignment.iterations):
                if deadline.is_set():
                    logger.debug(f"Worker {tag} observed cancellation after {iteration} operation(s)")
                    break
                if bucket is not None and not await deadline.guard(bucket.acquire()):
                    break

                op = self._build_operation(assignment, iteration, read_targets)
                sink.note_dispatch()
                outcome = await issuer.issue(op)
                sink.push(outcome)
                self._advance_progress(sink, assignment.worker_id)
            return True
        except Exception:
            logger.exception(f"Worker {tag} faulted")
            return False
        finally:
            logger.debug(f"Worker {tag} stopped")

    def _build_operation(
        self, assignment: WorkerAssignment, iteration: int, read_targets: list[tuple[str, int]]
    ) -> Operation:
        spec = self.spec
        if assignment.role is OperationKind.WRITE:
            size = spec.payload_sizes[iteration % len(spec.payload_sizes)]
            key = f"{spec.key_prefix}/{assignment.tag}/{iteration}"
        elif assignment.role is OperationKind.READ:
            key, size = read_targets[(assignment.worker_id + iteration) % len(read_targets)]
        else:
            key, size = f"{spec.key_prefix}/", 0
        return Operation(
            kind=assignment.role,
            bucket=spec.bucket,
            key=key,
            payload_size=size,
            worker_id=assignment.worker_id,
            role=assignment.tag,
            iteration=iteration,
        )

    def _expected_classes(self) -> list[tuple[OperationKind, int]]:
        spec = self.spec
        classes = []
        if spec.writers:
            classes += [(OperationKind.WRITE, size) for size in spec.payload_sizes]
        if spec.readers:
            classes += [(OperationKind.READ, size) for size in spec.payload_sizes]
        if spec.listers:
            classes.append((OperationKind.LIST, 0))
        return classes

    # ────────────────────────────────
    # Progress Reporting
    # ────────────────────────────────

    def _start_progress(self) -> None:
        if not self.use_progress_bar:
            return
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
        )
        self._progress.start()
        self._progress_task = self._progress.add_task(
            "[cyan]Pouring...", total=self.spec.scheduled_operations
        )

    def _advance_progress(self, sink: OutcomeSink, worker_id: int) -> None:
        completed = sink.accepted + sink.dropped
        if self._progress is not None:
            self._progress.update(self._progress_task, completed=completed)
        if self.progress_callback is not None:
            self.progress_callback(completed, self.spec.scheduled_operations, worker_id)

    def _stop_progress(self) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
