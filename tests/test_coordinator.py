"""Tests for the nesting coordinator."""

import asyncio
import time

import pytest

from src.config import Settings
from src.nesting.coordinator import JobStatus, NestingCoordinator, NestingJob, normalize_result
from src.nesting.exceptions import InvalidConfigError, NestingBusyError, OptimizerError, ProtocolError
from src.nesting.models import Backend, NestingConfig, NestingResult, Part, Placement, Sheet
from src.nesting.optimizer import NestingOptimizer
from src.nesting.protocol import (
    Algorithm,
    ErrorCode,
    ErrorMessage,
    NestResultPayload,
    ProgressMessage,
    ResultMessage,
)


@pytest.fixture
def settings():
    """Small, seeded optimizer settings."""
    return Settings(
        optimizer="genetic",
        random_seed=1,
        default_iterations=5,
        default_population_size=6,
    )


@pytest.fixture
def parts():
    return [Part("a", 100, 50, 2), Part("b", 80, 40, 3)]


SHEET = Sheet(1000, 500)


class SlowOptimizer(NestingOptimizer):
    """Sleeps every iteration so a job stays running until cancelled."""

    name = "slow"

    def nest(self, request, progress, is_cancelled):
        run = 0
        for i in range(request.config.iterations):
            if is_cancelled():
                break
            time.sleep(0.01)
            run = i + 1
            progress(run, request.config.iterations, 0.2)
        return NestResultPayload(iterations_run=run)


class BrokenOptimizer(NestingOptimizer):
    """Always fails."""

    name = "broken"

    def nest(self, request, progress, is_cancelled):
        raise OptimizerError("boom")


def unavailable_optimizer():
    raise ImportError("optimizer module missing")


async def wait_for_progress(event):
    await asyncio.wait_for(event.wait(), timeout=10)


class TestHeuristicPath:
    """Tests for jobs served by the shelf packer."""

    @pytest.mark.asyncio
    async def test_without_start(self, settings):
        """Test an unstarted coordinator uses the shelf packer."""
        coordinator = NestingCoordinator(settings)
        result = await coordinator.nest([Part("a", 100, 50, 2)], SHEET)

        assert [(p.x, p.y) for p in result.placements] == [(0, 0), (102, 0)]
        assert result.sheets_used == 1
        assert coordinator.last_job.status == JobStatus.COMPLETED
        assert coordinator.last_job.algorithm == Algorithm.SHELF_PACK
        assert coordinator.status == JobStatus.IDLE

    @pytest.mark.asyncio
    async def test_spacing_override(self, settings):
        """Test per-call overrides win over settings defaults."""
        coordinator = NestingCoordinator(settings)
        result = await coordinator.nest([Part("a", 100, 50, 2)], SHEET, {"spacing": 5})

        assert result.placements[1].x == 105

    @pytest.mark.asyncio
    async def test_settings_spacing(self):
        """Test settings provide the default spacing."""
        coordinator = NestingCoordinator(Settings(default_spacing=10))
        result = await coordinator.nest([Part("a", 100, 50, 2)], SHEET)

        assert result.placements[1].x == 110

    @pytest.mark.asyncio
    async def test_negative_spacing(self, settings):
        """Test negative spacing is rejected before any job starts."""
        coordinator = NestingCoordinator(settings)

        with pytest.raises(InvalidConfigError):
            await coordinator.nest([Part("a", 10, 10)], SHEET, {"spacing": -1})
        assert coordinator.last_job is None

    @pytest.mark.asyncio
    async def test_invalid_sheet(self, settings):
        """Test a zero-size sheet is rejected."""
        coordinator = NestingCoordinator(settings)

        with pytest.raises(InvalidConfigError):
            await coordinator.nest([Part("a", 10, 10)], Sheet(0, 500))

    @pytest.mark.asyncio
    async def test_empty_parts(self, settings):
        """Test nothing to place."""
        coordinator = NestingCoordinator(settings)
        result = await coordinator.nest([], SHEET)

        assert result == NestingResult()

    def test_cancel_without_job(self, settings):
        """Test cancel is a no-op when nothing is running."""
        assert NestingCoordinator(settings).cancel() is False


class TestAdvancedPath:
    """Tests for jobs served by the background optimizer."""

    @pytest.mark.asyncio
    async def test_result_and_progress(self, settings, parts):
        """Test the optimizer result and monotonic progress updates."""
        updates = []
        async with NestingCoordinator(settings) as coordinator:
            assert coordinator.advanced_available
            result = await coordinator.nest(parts, SHEET, on_progress=updates.append)

        job = coordinator.last_job
        assert job.backend == Backend.ADVANCED
        assert job.algorithm == Algorithm.ADVANCED
        assert job.iterations_run == 5
        assert job.status == JobStatus.COMPLETED
        assert len(result.placements) == 5
        assert len(result.utilization) == result.sheets_used
        assert [u.iteration for u in updates] == [1, 2, 3, 4, 5]
        assert job.progress.fraction == 1.0

    @pytest.mark.asyncio
    async def test_forced_heuristic(self, settings, parts):
        """Test backend=heuristic bypasses a loaded optimizer."""
        async with NestingCoordinator(settings) as coordinator:
            result = await coordinator.nest(parts, SHEET, {"backend": "heuristic"})

        assert coordinator.last_job.backend == Backend.HEURISTIC
        assert coordinator.last_job.algorithm == Algorithm.SHELF_PACK
        assert len(result.placements) == 5

    @pytest.mark.asyncio
    async def test_degraded_when_load_fails(self, settings, parts):
        """Test an optimizer that fails to load leaves the shelf packer."""
        async with NestingCoordinator(settings, unavailable_optimizer) as coordinator:
            assert coordinator.advanced_available is False
            result = await coordinator.nest(parts, SHEET, {"backend": "advanced"})

        assert coordinator.last_job.backend == Backend.HEURISTIC
        assert len(result.placements) == 5

    @pytest.mark.asyncio
    async def test_degraded_when_disabled(self, parts):
        """Test optimizer='none' runs in degraded mode."""
        async with NestingCoordinator(Settings(optimizer="none")) as coordinator:
            assert coordinator.advanced_available is False
            result = await coordinator.nest(parts, SHEET)

        assert coordinator.last_job.algorithm == Algorithm.SHELF_PACK
        assert result.sheets_used == 1

    @pytest.mark.asyncio
    async def test_failure(self, settings, parts):
        """Test optimizer errors resolve to None and record the message."""
        async with NestingCoordinator(settings, BrokenOptimizer) as coordinator:
            result = await coordinator.nest(parts, SHEET)

        assert result is None
        assert coordinator.last_job.status == JobStatus.FAILED
        assert coordinator.last_error == "boom"

    @pytest.mark.asyncio
    async def test_error_cleared_by_next_job(self, settings, parts):
        """Test a new job clears the previous failure message."""
        async with NestingCoordinator(settings, BrokenOptimizer) as coordinator:
            assert await coordinator.nest(parts, SHEET) is None
            assert coordinator.last_error == "boom"

            result = await coordinator.nest(parts, SHEET, {"backend": "heuristic"})

        assert result is not None
        assert coordinator.last_error is None

    @pytest.mark.asyncio
    async def test_progress_handler_errors_are_contained(self, settings, parts):
        """Test a failing progress handler does not break the job."""

        def explode(update):
            raise RuntimeError("handler broke")

        async with NestingCoordinator(settings) as coordinator:
            result = await coordinator.nest(parts, SHEET, on_progress=explode)

        assert result is not None
        assert coordinator.last_job.status == JobStatus.COMPLETED


class TestCancellation:
    """Tests for cancelling optimizer jobs."""

    @pytest.mark.asyncio
    async def test_cancel_then_reuse(self, settings, parts):
        """Test a cancelled job returns None and the coordinator accepts the next job."""
        started = asyncio.Event()
        async with NestingCoordinator(settings, SlowOptimizer) as coordinator:
            task = asyncio.create_task(
                coordinator.nest(parts, SHEET, {"iterations": 1000}, on_progress=lambda u: started.set())
            )
            await wait_for_progress(started)

            assert coordinator.status == JobStatus.RUNNING
            assert coordinator.cancel() is True
            assert await task is None
            cancelled = coordinator.last_job
            assert cancelled.status == JobStatus.CANCELLED
            assert coordinator.status == JobStatus.IDLE

            result = await coordinator.nest(parts, SHEET, {"iterations": 3})

        assert result is not None
        assert coordinator.last_job is not cancelled
        assert coordinator.last_job.iterations_run == 3
        assert cancelled.status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_busy(self, settings, parts):
        """Test a second job is refused while one is running."""
        started = asyncio.Event()
        async with NestingCoordinator(settings, SlowOptimizer) as coordinator:
            task = asyncio.create_task(
                coordinator.nest(parts, SHEET, {"iterations": 1000}, on_progress=lambda u: started.set())
            )
            await wait_for_progress(started)

            with pytest.raises(NestingBusyError):
                await coordinator.nest(parts, SHEET)

            coordinator.cancel()
            assert await task is None

    @pytest.mark.asyncio
    async def test_stop_resolves_running_job(self, settings, parts):
        """Test stopping the coordinator resolves an in-flight job to None."""
        started = asyncio.Event()
        coordinator = NestingCoordinator(settings, SlowOptimizer)
        await coordinator.start()
        task = asyncio.create_task(
            coordinator.nest(parts, SHEET, {"iterations": 1000}, on_progress=lambda u: started.set())
        )
        await wait_for_progress(started)

        await coordinator.stop()

        assert await task is None
        assert coordinator.last_job.status in (JobStatus.CANCELLED, JobStatus.FAILED)
        assert not coordinator.is_started

    def test_late_result_discarded(self, settings):
        """Test a RESULT for an already cancelled job is dropped."""
        coordinator = NestingCoordinator(settings)
        job = NestingJob(backend=Backend.ADVANCED, config=NestingConfig(), sheet=SHEET)
        job.start()
        job.cancel()
        coordinator._pending.append(job)

        coordinator._on_terminal(ResultMessage(NestResultPayload(sheets_used=1, utilization=[0.5])))

        assert job.status == JobStatus.CANCELLED
        assert job.result is None
        assert not coordinator._pending

    def test_out_of_order_progress_dropped(self, settings):
        """Test progress older than the last relayed update is ignored."""
        updates = []
        coordinator = NestingCoordinator(settings)
        job = NestingJob(
            backend=Backend.ADVANCED, config=NestingConfig(), sheet=SHEET, on_progress=updates.append
        )
        job.start()
        coordinator._pending.append(job)

        for iteration in (1, 3, 2, 4):
            coordinator._on_progress(ProgressMessage(iteration, 4, 0.1 * iteration))

        assert [u.iteration for u in updates] == [1, 3, 4]
        assert job.progress.iteration == 4

    @pytest.mark.asyncio
    async def test_malformed_result_fails_job(self, settings):
        """Test a broken RESULT payload resolves the caller to None with the error kept."""
        coordinator = NestingCoordinator(settings)
        job = NestingJob(backend=Backend.ADVANCED, config=NestingConfig(), sheet=SHEET)
        job.future = asyncio.get_running_loop().create_future()
        job.start()
        coordinator._pending.append(job)
        coordinator._messages = asyncio.Queue()
        pump = asyncio.create_task(coordinator._pump())
        try:
            coordinator._messages.put_nowait({"type": "RESULT", "payload": {"placements": "nope"}})
            result = await asyncio.wait_for(job.future, timeout=5)
        finally:
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass

        assert result is None
        assert job.status == JobStatus.FAILED
        assert job.error
        assert coordinator.last_error == job.error
        assert not coordinator._pending

    def test_malformed_progress_ignored(self, settings):
        """Test a broken PROGRESS does not touch the waiting job."""
        coordinator = NestingCoordinator(settings)
        job = NestingJob(backend=Backend.ADVANCED, config=NestingConfig(), sheet=SHEET)
        job.start()
        coordinator._pending.append(job)

        coordinator._on_malformed({"type": "PROGRESS", "payload": {}}, ProtocolError("missing field"))

        assert job.status == JobStatus.RUNNING
        assert list(coordinator._pending) == [job]

    def test_worker_cancelled_error(self, settings):
        """Test a CANCELLED error from the worker cancels the waiting job."""
        coordinator = NestingCoordinator(settings)
        job = NestingJob(backend=Backend.ADVANCED, config=NestingConfig(), sheet=SHEET)
        job.start()
        coordinator._pending.append(job)

        coordinator._on_terminal(ErrorMessage("Nesting cancelled", ErrorCode.CANCELLED))

        assert job.status == JobStatus.CANCELLED
        assert coordinator.last_error is None


class TestNormalizeResult:
    """Tests for normalize_result."""

    def test_passthrough(self):
        """Test consistent results are returned unchanged."""
        result = NestingResult([Placement("a", 0, 0, 0, 10, 10)], 1, [0.01])

        assert normalize_result(result, Sheet(100, 100)) is result

    def test_recomputes_missing_utilization(self):
        """Test utilization is rebuilt when its length does not match."""
        payload = NestResultPayload(
            placements=[Placement("a", 0, 0, 0, 50, 50), Placement("b", 1, 0, 0, 10, 10)],
            sheets_used=2,
            utilization=[],
        )
        result = normalize_result(payload, Sheet(100, 100))

        assert result.utilization == [pytest.approx(0.25), pytest.approx(0.01)]
