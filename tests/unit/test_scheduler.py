"""Unit tests for the CycleScheduler (govmon/services/scheduler.py)."""

import asyncio
import time
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest
from apscheduler.events import EVENT_JOB_MAX_INSTANCES, JobSubmissionEvent
from apscheduler.triggers.cron import CronTrigger

from govmon.core.exceptions import CycleInProgressError, MonitorError, StoreError
from govmon.schemas.monitoring import SchedulerState
from govmon.services.probe import ProbeEngine
from govmon.services.scheduler import JOB_ID, CycleScheduler, preset_cron
from tests.mocks.fake_clock import NOW


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
class TestCycle:
    async def test_systems_without_url_are_skipped(self, store, scheduler):
        await store.create_system(name="No URL")
        await store.create_system(name="Blank URL", url="  ")
        await store.create_system(name="Portal", url="https://portal.example.gov")

        summary = await scheduler.run_cycle()

        assert summary.total == 3
        assert summary.checked == 1
        assert summary.skipped == 2
        assert summary.up == 1
        assert summary.down == 0

    async def test_up_stays_up_without_interval(self, store, scheduler, clock):
        system = await store.create_system(name="Portal", url="https://portal.example.gov")

        summary = await scheduler.run_cycle()

        assert summary.up == 1
        reloaded = await store.get_system(system.id)
        assert reloaded.status == "Up"
        assert reloaded.last_check == clock.now.replace(tzinfo=None)
        assert await store.get_open_interval(system.id) is None

    async def test_connection_refused_opens_interval(self, store, scheduler):
        system = await store.create_system(name="Portal", url="https://refused.example.gov")

        summary = await scheduler.run_cycle()

        assert summary.down == 1
        assert await store.get_system_status(system.id) == "Down"
        interval = await store.get_open_interval(system.id)
        assert interval is not None
        assert interval.error_message == "Connection refused"
        assert interval.state_transition == "Up → Down"

    async def test_recovery_closes_interval(self, store, scheduler, clock):
        system = await store.create_system(
            name="Portal", url="https://portal.example.gov", status="Down"
        )
        t0 = clock.now
        await store.insert_open_interval(system.id, t0, "Up → Down", "HTTP 503")

        clock.advance(minutes=42, seconds=10)
        summary = await scheduler.run_cycle()

        assert summary.up == 1
        assert await store.get_system_status(system.id) == "Up"
        assert await store.get_open_interval(system.id) is None
        [interval] = await store.list_intervals_in_window(system.id, t0 - timedelta(days=1))
        assert interval.up_time == clock.now.replace(tzinfo=None)
        assert interval.duration_minutes == 42

    async def test_still_down_keeps_single_open_interval(self, store, scheduler, clock):
        system = await store.create_system(name="Portal", url="https://down.example.gov")

        await scheduler.run_cycle()
        clock.advance(minutes=5)
        await scheduler.run_cycle()

        intervals = await store.list_intervals_in_window(system.id, NOW - timedelta(days=1))
        assert len(intervals) == 1
        assert intervals[0].up_time is None

    async def test_uptimes_refreshed_after_cycle(self, store, scheduler, clock):
        system = await store.create_system(name="Portal", url="https://down.example.gov")

        await scheduler.run_cycle()
        clock.advance(minutes=432)
        await scheduler.run_cycle()

        assert (await store.get_system(system.id)).uptime_percentage == 99.0

    async def test_persistence_error_for_one_system_does_not_abort_cycle(self, store, scheduler):
        first = await store.create_system(name="First", url="https://first.example.gov")
        second = await store.create_system(name="Second", url="https://down.example.gov")
        original = store.set_last_check

        async def failing_set_last_check(system_id, when):
            if system_id == first.id:
                raise StoreError("database is locked")
            return await original(system_id, when)

        with patch.object(store, "set_last_check", side_effect=failing_set_last_check):
            summary = await scheduler.run_cycle()

        assert summary.checked == 2
        assert summary.up == 1
        assert summary.down == 1
        assert await store.get_system_status(second.id) == "Down"

    async def test_summary_trigger_and_timestamps(self, scheduler, clock):
        summary = await scheduler.run_cycle(trigger="manual")

        assert summary.trigger == "manual"
        assert summary.started_at == clock.now
        assert summary.finished_at == clock.now
        assert summary.total == 0


@pytest.mark.asyncio
class TestFanOut:
    async def test_probes_run_concurrently(self, store, ledger, aggregator, clock):
        for name in ("alpha", "bravo", "charlie"):
            await store.create_system(name=name, url=f"https://{name}.example.gov")

        async def slow(request):
            await asyncio.sleep(0.5)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
            scheduler = CycleScheduler(
                store, ProbeEngine(client, timeout=5.0, clock=clock), ledger, aggregator, clock=clock
            )
            started = time.monotonic()
            summary = await scheduler.run_cycle()
            elapsed = time.monotonic() - started

        assert summary.up == 3
        # One sleep, not three back to back
        assert elapsed < 1.2

    async def test_hanging_target_does_not_block_others(self, store, ledger, aggregator, clock):
        hanging = await store.create_system(name="Hanging", url="https://hang.example.gov")
        healthy = await store.create_system(name="Healthy", url="https://ok.example.gov")
        failing = await store.create_system(name="Failing", url="https://down.example.gov")

        async def route(request):
            if request.url.host.startswith("hang"):
                await asyncio.sleep(30)
            if request.url.host.startswith("down"):
                return httpx.Response(503)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(route)) as client:
            scheduler = CycleScheduler(
                store, ProbeEngine(client, timeout=0.3, clock=clock), ledger, aggregator, clock=clock
            )
            started = time.monotonic()
            summary = await scheduler.run_cycle()
            elapsed = time.monotonic() - started

        assert elapsed < 5
        assert summary.checked == 3
        assert summary.up == 1
        assert summary.down == 2
        assert await store.get_system_status(healthy.id) == "Up"
        assert await store.get_system_status(failing.id) == "Down"
        assert (await store.get_open_interval(failing.id)).error_message == "HTTP 503"
        assert (await store.get_open_interval(hanging.id)).error_message == "Request timeout"

    async def test_records_stamped_with_probe_start(self, store, ledger, aggregator, clock):
        system = await store.create_system(name="Portal", url="https://down.example.gov")
        probe_started = clock.now

        def slow_failure(request):
            clock.advance(seconds=40)
            return httpx.Response(503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(slow_failure)) as client:
            scheduler = CycleScheduler(
                store, ProbeEngine(client, timeout=5.0, clock=clock), ledger, aggregator, clock=clock
            )
            summary = await scheduler.run_cycle()

        assert summary.finished_at == probe_started + timedelta(seconds=40)
        interval = await store.get_open_interval(system.id)
        assert interval.down_time == probe_started.replace(tzinfo=None)
        assert (await store.get_system(system.id)).last_check == probe_started.replace(tzinfo=None)


@pytest.mark.asyncio
class TestSingleFlight:
    async def test_concurrent_trigger_is_skipped(self, store, ledger, aggregator, clock):
        await store.create_system(name="Slow", url="https://slow.example.gov")
        release = asyncio.Event()

        async def gated(request):
            await release.wait()
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(gated)) as client:
            scheduler = CycleScheduler(
                store, ProbeEngine(client, timeout=5.0, clock=clock), ledger, aggregator, clock=clock
            )
            first = asyncio.create_task(scheduler.run_cycle())
            await _wait_for(lambda: scheduler.state == SchedulerState.RUNNING)

            assert await scheduler.run_cycle() is None
            with pytest.raises(CycleInProgressError):
                await scheduler.run_manual()

            release.set()
            summary = await first

        assert summary is not None
        assert summary.checked == 1
        assert scheduler.state == SchedulerState.IDLE
        status = scheduler.status()
        assert status.cycles_completed == 1
        assert status.cycles_skipped == 2

    async def test_max_instances_event_counts_as_skip(self, scheduler):
        event = JobSubmissionEvent(EVENT_JOB_MAX_INSTANCES, JOB_ID, "default", [NOW])

        scheduler._on_job_not_run(event)

        assert scheduler.status().cycles_skipped == 1


@pytest.mark.asyncio
class TestFailures:
    async def test_cycle_error_is_recorded_and_next_cycle_runs(self, store, scheduler):
        with patch.object(store, "list_probeable_systems", side_effect=RuntimeError("db gone")):
            assert await scheduler.run_cycle() is None

        status = scheduler.status()
        assert status.cycles_failed == 1
        assert status.last_error == "db gone"
        assert status.state == SchedulerState.IDLE

        summary = await scheduler.run_cycle()
        assert summary is not None
        assert scheduler.status().last_error is None
        assert scheduler.status().cycles_completed == 1

    async def test_manual_run_failure_surfaces_generic_error(self, store, scheduler):
        with patch.object(store, "list_probeable_systems", side_effect=RuntimeError("secret detail")):
            with pytest.raises(MonitorError) as exc_info:
                await scheduler.run_manual()

        assert exc_info.value.code == "cycle_failed"
        assert "secret detail" not in exc_info.value.message


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_runs_first_cycle_immediately(self, store, scheduler):
        await store.create_system(name="Portal", url="https://portal.example.gov")

        await scheduler.start()
        assert scheduler.active is True
        await _wait_for(lambda: scheduler.status().cycles_completed >= 1)

        status = scheduler.status()
        assert status.last_summary.checked == 1
        assert status.last_summary.trigger == "schedule"
        assert status.next_run_time is not None

        await scheduler.stop()
        assert scheduler.active is False

    async def test_stop_without_start_is_noop(self, scheduler):
        await scheduler.stop()
        assert scheduler.active is False

    async def test_schedule_description(self, store, probe_engine, ledger, aggregator):
        interval = CycleScheduler(store, probe_engine, ledger, aggregator, interval_minutes=10)
        cron = CycleScheduler(
            store, probe_engine, ledger, aggregator, cron="*/5 * * * *", timezone="Asia/Thimphu"
        )

        assert interval.schedule_description == "every 10 minute(s)"
        assert cron.schedule_description == "cron '*/5 * * * *' (Asia/Thimphu)"

    async def test_invalid_cron_rejected(self, store, probe_engine, ledger, aggregator):
        with pytest.raises(ValueError):
            CycleScheduler(store, probe_engine, ledger, aggregator, cron="every five minutes")


class TestSchedulePresets:
    @pytest.mark.parametrize(
        "preset,expected",
        [("EVERY_1_MIN", "*/1 * * * *"), ("every_15_min", "*/15 * * * *"), (" EVERY_HOUR ", "0 * * * *")],
    )
    def test_preset_cron(self, preset, expected):
        assert preset_cron(preset) == expected

    def test_unknown_preset_lists_available(self):
        with pytest.raises(ValueError, match="EVERY_30_MIN"):
            preset_cron("EVERY_3_MIN")

    @pytest.mark.asyncio
    async def test_preset_drives_trigger(self, store, probe_engine, ledger, aggregator):
        scheduler = CycleScheduler(store, probe_engine, ledger, aggregator, preset="every_10_min")

        assert scheduler.schedule_description == "preset EVERY_10_MIN (cron '*/10 * * * *', UTC)"
        assert isinstance(scheduler._trigger, CronTrigger)

    @pytest.mark.asyncio
    async def test_cron_overrides_preset(self, store, probe_engine, ledger, aggregator):
        scheduler = CycleScheduler(
            store, probe_engine, ledger, aggregator, cron="0 6 * * *", preset="EVERY_1_MIN"
        )

        assert scheduler.schedule_description == "cron '0 6 * * *' (UTC)"

    @pytest.mark.asyncio
    async def test_unknown_preset_rejected_at_construction(self, store, probe_engine, ledger, aggregator):
        with pytest.raises(ValueError):
            CycleScheduler(store, probe_engine, ledger, aggregator, preset="HOURLY-ISH")
