"""Nesting coordinator.

One entry point for "pack these parts on this sheet type". Per call it picks
the synchronous shelf packer or the background optimizer, relays optimizer
progress, supports cancellation and turns either backend's output into the
same NestingResult.

Job lifecycle: Idle -> Running -> Completed | Cancelled | Failed, after which
the coordinator is Idle again and accepts the next job. Only one job runs per
coordinator at a time.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

from src.config import Settings, get_settings
from src.nesting.collision import effective_box, utilization
from src.nesting.exceptions import NestingBusyError, ProtocolError
from src.nesting.models import (
    Backend,
    NestingConfig,
    NestingProgress,
    NestingResult,
    Part,
    Sheet,
)
from src.nesting.optimizer import NestingOptimizer, load_optimizer
from src.nesting.protocol import (
    Algorithm,
    CancelMessage,
    ErrorCode,
    ErrorMessage,
    MessageType,
    NestMessage,
    NestRequestPayload,
    NestResultPayload,
    ProgressMessage,
    ReadyMessage,
    ResultMessage,
    parse_message,
)
from src.nesting.shelf_packer import shelf_pack, validate_request
from src.nesting.worker import NestingWorker
from src.utils import format_percent, get_logger

logger = get_logger("nesting.coordinator")

ProgressHandler = Callable[[NestingProgress], None]


class JobStatus(str, Enum):
    """Nesting job status."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class NestingJob:
    """One nesting run and its outcome."""
    backend: Backend
    config: NestingConfig
    sheet: Optional[Sheet] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    status: JobStatus = JobStatus.IDLE
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: Optional[NestingProgress] = None
    result: Optional[NestingResult] = None
    error: Optional[str] = None
    algorithm: Optional[Algorithm] = None
    iterations_run: int = 0
    on_progress: Optional[ProgressHandler] = field(default=None, repr=False)
    future: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED)

    def start(self) -> None:
        self.status = JobStatus.RUNNING
        self.started_at = datetime.utcnow()

    def _finish(self, status: JobStatus, result: Optional[NestingResult] = None) -> None:
        self.status = status
        self.result = result
        self.completed_at = datetime.utcnow()
        if self.future is not None and not self.future.done():
            self.future.set_result(result)

    def complete(self, result: NestingResult) -> None:
        self._finish(JobStatus.COMPLETED, result)

    def cancel(self) -> None:
        self._finish(JobStatus.CANCELLED)

    def fail(self, error: str) -> None:
        self.error = error
        self._finish(JobStatus.FAILED)

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()


def normalize_result(raw: Union[NestingResult, NestResultPayload], sheet: Sheet) -> NestingResult:
    """Map either backend's output onto a NestingResult.

    Utilization is recomputed from the placements when a backend reports a
    list that does not match its sheet count.
    """
    result = raw.to_result() if isinstance(raw, NestResultPayload) else raw
    if len(result.utilization) == result.sheets_used:
        return result

    boxes: List[list] = [[] for _ in range(result.sheets_used)]
    for placement in result.placements:
        if 0 <= placement.sheet_index < result.sheets_used:
            boxes[placement.sheet_index].append(effective_box(placement))
    return NestingResult(
        placements=list(result.placements),
        sheets_used=result.sheets_used,
        utilization=[utilization(b, sheet.width, sheet.height) for b in boxes],
    )


class NestingCoordinator:
    """
    Runs nesting jobs on the shelf packer or the background optimizer.

    Usage:
        async with NestingCoordinator() as coordinator:
            result = await coordinator.nest(parts, Sheet(3000, 1500), {"iterations": 200})
            if result is None:
                print(coordinator.last_job.status, coordinator.last_error)

    Without :meth:`start` (or the context manager) no optimizer is loaded and
    every job uses the shelf packer.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        optimizer_factory: Optional[Callable[[], NestingOptimizer]] = None,
    ):
        self.settings = settings or get_settings()
        self.defaults = NestingConfig.from_settings(self.settings)
        self._optimizer_factory = optimizer_factory or (
            lambda: load_optimizer(self.settings.optimizer, self.settings.random_seed)
        )

        self._worker: Optional[NestingWorker] = None
        self._messages: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._pending: Deque[NestingJob] = deque()

        self._current: Optional[NestingJob] = None
        self.last_job: Optional[NestingJob] = None
        self.last_error: Optional[str] = None
        self.advanced_available = False

    async def __aenter__(self) -> "NestingCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def status(self) -> JobStatus:
        """RUNNING while a job is in flight, IDLE otherwise."""
        if self._current is not None and not self._current.is_finished:
            return JobStatus.RUNNING
        return JobStatus.IDLE

    @property
    def is_started(self) -> bool:
        return self._worker is not None

    async def start(self) -> None:
        """Start the background worker and wait for its READY message."""
        if self._worker is not None:
            return
        loop = asyncio.get_running_loop()
        self._messages = asyncio.Queue()
        self._ready = loop.create_future()

        def post(data: Dict[str, Any]) -> None:
            try:
                loop.call_soon_threadsafe(self._messages.put_nowait, data)
            except RuntimeError:
                logger.debug("Dropped worker message after event loop closed")

        self._worker = NestingWorker(post, self._optimizer_factory)
        self._pump_task = asyncio.create_task(self._pump())
        self._worker.start()

        self.advanced_available = await self._ready
        if self.advanced_available:
            logger.info("Nesting coordinator ready (advanced optimizer available)")
        else:
            logger.warning("Nesting coordinator running in degraded mode (shelf packer only)")

    async def stop(self) -> None:
        """Stop the worker; unfinished jobs resolve to None."""
        if self._worker is None:
            return
        worker, self._worker = self._worker, None
        await asyncio.get_running_loop().run_in_executor(None, worker.stop)

        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        while self._pending:
            job = self._pending.popleft()
            if not job.is_finished:
                job.fail("Coordinator stopped")
        self.advanced_available = False
        logger.info("Nesting coordinator stopped")

    def _select_backend(self, config: NestingConfig) -> Backend:
        if config.backend == Backend.HEURISTIC:
            return Backend.HEURISTIC
        if self.advanced_available and self._worker is not None:
            return Backend.ADVANCED
        if config.backend == Backend.ADVANCED:
            logger.warning("Advanced optimizer requested but unavailable, using shelf packer")
        return Backend.HEURISTIC

    async def nest(
        self,
        parts: Sequence[Part],
        sheet: Sheet,
        config: Optional[Union[Mapping[str, Any], NestingConfig]] = None,
        on_progress: Optional[ProgressHandler] = None,
    ) -> Optional[NestingResult]:
        """
        Nest parts on copies of one sheet type.

        Args:
            parts: Parts to place
            sheet: Sheet definition
            config: Partial overrides (spacing, rotationSteps, iterations,
                populationSize, mutationRate, backend, seed)
            on_progress: Called with each optimizer progress update

        Returns:
            NestingResult, or None if the job was cancelled or failed

        Raises:
            InvalidConfigError: On negative spacing or invalid sheet/parts
            NestingBusyError: If a job is already running
        """
        if self.status == JobStatus.RUNNING:
            raise NestingBusyError("A nesting job is already running on this coordinator")

        resolved = NestingConfig.resolve(config, self.defaults)
        validate_request(parts, sheet, resolved.spacing)

        job = NestingJob(
            backend=self._select_backend(resolved),
            config=resolved,
            sheet=sheet,
            on_progress=on_progress,
        )
        self._current = job
        self.last_job = job
        self.last_error = None
        job.start()
        logger.info(
            f"Nesting job {job.id} started: {sum(max(0, p.quantity) for p in parts)} unit(s), "
            f"backend={job.backend.value}"
        )

        try:
            if job.backend == Backend.HEURISTIC:
                return self._run_heuristic(job, parts, sheet)
            return await self._run_advanced(job, parts, sheet)
        except asyncio.CancelledError:
            self.cancel()
            raise
        finally:
            if self._current is job:
                self._current = None

    def _run_heuristic(self, job: NestingJob, parts: Sequence[Part], sheet: Sheet) -> NestingResult:
        raw = shelf_pack(parts, sheet, job.config.spacing)
        result = normalize_result(raw, sheet)
        job.algorithm = Algorithm.SHELF_PACK
        job.complete(result)
        logger.info(
            f"Nesting job {job.id} completed: {len(result.placements)} placement(s) on "
            f"{result.sheets_used} sheet(s), {format_percent(result.total_utilization)} used"
        )
        return result

    async def _run_advanced(self, job: NestingJob, parts: Sequence[Part], sheet: Sheet) -> Optional[NestingResult]:
        job.future = asyncio.get_running_loop().create_future()
        self._pending.append(job)
        request = NestRequestPayload(sheet=sheet, parts=list(parts), config=job.config)
        self._worker.send(NestMessage(request).to_dict())
        return await job.future

    def cancel(self) -> bool:
        """
        Cancel the running optimizer job.

        The job's caller receives None immediately; a late RESULT from the
        worker is discarded.

        Returns:
            True if a job was cancelled
        """
        job = self._current
        if job is None or job.is_finished or job.backend != Backend.ADVANCED:
            return False
        if self._worker is not None:
            self._worker.send(CancelMessage().to_dict())
        job.cancel()
        logger.info(f"Nesting job {job.id} cancelled")
        return True

    async def _pump(self) -> None:
        """Dispatch worker messages to jobs in the order they were sent."""
        while True:
            data = await self._messages.get()
            try:
                message = parse_message(data)
            except ProtocolError as e:
                self._on_malformed(data, e)
                continue

            if isinstance(message, ReadyMessage):
                self._on_ready(message)
            elif isinstance(message, ProgressMessage):
                self._on_progress(message)
            elif isinstance(message, (ResultMessage, ErrorMessage)):
                self._on_terminal(message)
            else:
                logger.warning(f"Ignoring unexpected {message.type.value} message from worker")

    def _on_ready(self, message: ReadyMessage) -> None:
        self.advanced_available = message.advanced_available
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(message.advanced_available)

    def _on_progress(self, message: ProgressMessage) -> None:
        if not self._pending:
            return
        job = self._pending[0]
        if job.is_finished:
            return
        if job.progress is not None and message.iteration < job.progress.iteration:
            return

        job.progress = NestingProgress(
            iteration=message.iteration,
            total_iterations=message.total_iterations,
            utilization=message.current_utilization,
        )
        logger.debug(
            f"Nesting job {job.id}: iteration {message.iteration}/{message.total_iterations}, "
            f"{format_percent(message.current_utilization)}"
        )
        if job.on_progress is not None:
            try:
                job.on_progress(job.progress)
            except Exception as e:
                logger.error(f"Progress handler failed: {e}")

    def _on_terminal(self, message: Union[ResultMessage, ErrorMessage]) -> None:
        if not self._pending:
            logger.warning(f"Dropping {message.type.value} with no job waiting")
            return
        job = self._pending.popleft()
        if job.is_finished:
            logger.debug(f"Discarding late {message.type.value} for job {job.id}")
            return

        if isinstance(message, ResultMessage):
            job.algorithm = message.payload.algorithm
            job.iterations_run = message.payload.iterations_run
            result = normalize_result(message.payload, job.sheet)
            job.complete(result)
            logger.info(
                f"Nesting job {job.id} completed after {job.iterations_run} iteration(s): "
                f"{result.sheets_used} sheet(s), {format_percent(result.total_utilization)} used"
            )
        elif message.code == ErrorCode.CANCELLED:
            job.cancel()
            logger.info(f"Nesting job {job.id} cancelled by worker")
        else:
            self.last_error = message.message
            job.fail(message.message)
            logger.error(f"Nesting job {job.id} failed ({message.code.value}): {message.message}")

    def _on_malformed(self, data: Any, error: ProtocolError) -> None:
        logger.error(f"Malformed worker message: {error}")
        message_type = data.get("type") if isinstance(data, Mapping) else None
        if message_type not in (MessageType.RESULT.value, MessageType.ERROR.value):
            return
        if not self._pending:
            return
        job = self._pending.popleft()
        if not job.is_finished:
            self.last_error = str(error)
            job.fail(str(error))
