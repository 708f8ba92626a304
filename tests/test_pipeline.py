import asyncio
from datetime import timedelta

import pytest

from fleet_alerts.alerting.gate import AlertGate
from fleet_alerts.alerting.pipeline import AlertPipeline
from fleet_alerts.models.telemetry import AlertType, Severity, TelemetrySample

from conftest import (
    FakeResolver,
    InMemoryAlertRepository,
    InMemoryTelemetryRepository,
    RecordingLocationTracker,
    RecordingNotifier,
)


def _run_and_flush(pipeline, coro):
    async def scenario():
        result = await coro
        await pipeline.flush_notifications()
        return result

    return asyncio.run(scenario())


def test_speeding_sample_raises_alert_for_bound_vehicle(pipeline, repository, notifier) -> None:
    alert = _run_and_flush(pipeline, pipeline.process_telemetry_event({"device_id": "D1", "speed": 130}))

    assert alert is not None
    assert alert.vehicle_id == "V1"
    assert "130" in alert.description
    assert repository.alerts == [alert]
    assert notifier.alerts == [alert]


def test_speed_under_limit_raises_nothing(pipeline, repository) -> None:
    assert asyncio.run(pipeline.process_telemetry_event({"device_id": "D1", "speed": 90})) is None
    assert repository.alerts == []


def test_unusual_movement_raises_warning(pipeline) -> None:
    alert = asyncio.run(pipeline.process_telemetry_event({"device_id": "D1", "accel_z": 35}))

    assert alert.type == AlertType.UNUSUAL_MOVEMENT
    assert alert.severity == Severity.WARNING
    assert "unusual movement" in alert.description


def test_speeding_and_movement_yield_single_speeding_alert(pipeline, repository) -> None:
    alert = asyncio.run(pipeline.process_telemetry_event({"device_id": "D1", "speed": 150, "accel_z": 40}))

    assert alert.type == AlertType.SPEEDING
    assert len(repository.alerts) == 1


def test_repeated_sample_is_deduplicated(pipeline, repository, notifier) -> None:
    sample = TelemetrySample(device_id="D1", speed=130)

    async def scenario():
        results = (
            await pipeline.process_telemetry_event(sample),
            await pipeline.process_telemetry_event(sample),
        )
        await pipeline.flush_notifications()
        return results

    first, second = asyncio.run(scenario())

    assert first is not None
    assert second is None
    assert len(repository.alerts) == 1
    assert len(notifier.alerts) == 1


def test_concurrent_samples_for_same_vehicle_insert_once(pipeline, repository) -> None:
    async def scenario():
        return await asyncio.gather(
            pipeline.process_telemetry_event({"device_id": "D1", "speed": 130}),
            pipeline.process_telemetry_event({"device_id": "D1", "speed": 140}),
        )

    results = asyncio.run(scenario())

    assert len([r for r in results if r is not None]) == 1
    assert len(repository.alerts) == 1


def test_unknown_device_is_dropped_quietly(pipeline, repository, notifier) -> None:
    assert asyncio.run(pipeline.process_telemetry_event({"device_id": "UNKNOWN", "speed": 200})) is None
    assert repository.alerts == []
    assert notifier.alerts == []


def test_malformed_row_is_dropped(pipeline, repository) -> None:
    assert asyncio.run(pipeline.process_telemetry_event({"speed": 200})) is None
    assert asyncio.run(pipeline.process_telemetry_event({"device_id": "D1", "speed": "fast"})) is None
    assert repository.alerts == []


def test_change_feed_row_with_created_at_is_accepted(pipeline) -> None:
    row = {"id": 17, "device_id": "D1", "speed": 120.0, "created_at": "2025-09-04T12:01:00Z"}

    assert asyncio.run(pipeline.process_telemetry_event(row)) is not None


def test_resolver_failure_is_logged_not_raised(resolver, gate, notifier) -> None:
    resolver.failing.add("D1")
    pipeline = AlertPipeline(resolver=resolver, gate=gate, notifier=notifier)

    assert asyncio.run(pipeline.process_telemetry_event({"device_id": "D1", "speed": 130})) is None


def test_persistence_is_retried_with_backoff(resolver, clock) -> None:
    repository = InMemoryAlertRepository(insert_failures=2)
    pipeline = AlertPipeline(resolver=resolver, gate=AlertGate(repository, clock=clock), retry_base_delay=0)

    alert = asyncio.run(pipeline.process_telemetry_event({"device_id": "D1", "speed": 130}))

    assert alert is not None
    assert repository.insert_attempts == 3


def test_persistence_gives_up_after_max_retries(resolver, clock) -> None:
    repository = InMemoryAlertRepository(insert_failures=5)
    pipeline = AlertPipeline(resolver=resolver, gate=AlertGate(repository, clock=clock),
                             max_retries=3, retry_base_delay=0)

    assert asyncio.run(pipeline.process_telemetry_event({"device_id": "D1", "speed": 130})) is None
    assert repository.insert_attempts == 3
    assert repository.alerts == []


def test_notification_failure_keeps_persisted_alert(resolver, gate, repository) -> None:
    pipeline = AlertPipeline(resolver=resolver, gate=gate, notifier=RecordingNotifier(fail=True))

    alert = asyncio.run(pipeline.process_telemetry_event({"device_id": "D1", "speed": 130}))

    assert alert is not None
    assert repository.alerts == [alert]


def test_location_is_recorded_only_when_tracking(resolver, gate) -> None:
    tracker = RecordingLocationTracker()
    pipeline = AlertPipeline(resolver=resolver, gate=gate, location_tracker=tracker)
    sample = {"device_id": "D1", "latitude": 33.57, "longitude": -7.59, "speed": 40}

    async def scenario():
        await pipeline.process_telemetry_event(sample)
        await pipeline.process_telemetry_event(sample, track_location=True)
        await pipeline.process_telemetry_event({"device_id": "D1", "speed": 40}, track_location=True)
        await pipeline.process_telemetry_event({"device_id": "UNKNOWN", "latitude": 1.0, "longitude": 1.0},
                                               track_location=True)

    asyncio.run(scenario())

    assert tracker.recorded == [("V1", 33.57, -7.59)]


def test_batch_sweep_isolates_failures(gate, repository, notifier) -> None:
    bindings = {f"D{i}": f"V{i}" for i in range(10)}
    resolver = FakeResolver(bindings, failing={"D3"})
    samples = [TelemetrySample(id=f"S{i}", device_id=f"D{i}", speed=130) for i in range(10)]
    pipeline = AlertPipeline(
        resolver=resolver,
        gate=gate,
        notifier=notifier,
        telemetry=InMemoryTelemetryRepository(samples),
        retry_base_delay=0,
    )

    report = _run_and_flush(pipeline, pipeline.run_batch_sweep())

    assert report.scanned == 10
    assert len(report.accepted) == 9
    assert {a.vehicle_id for a in report.accepted} == {f"V{i}" for i in range(10)} - {"V3"}
    assert report.failed_sample_ids == ["S3"]
    assert report.failed[0].device_id == "D3"
    assert len(notifier.alerts) == 9


def test_batch_sweep_reports_exhausted_persistence(resolver, clock) -> None:
    repository = InMemoryAlertRepository(insert_failures=10)
    samples = [TelemetrySample(id="S1", device_id="D1", speed=130), TelemetrySample(id="S2", device_id="D2")]
    pipeline = AlertPipeline(
        resolver=resolver,
        gate=AlertGate(repository, clock=clock),
        telemetry=InMemoryTelemetryRepository(samples),
        max_retries=2,
        retry_base_delay=0,
    )

    report = asyncio.run(pipeline.run_batch_sweep())

    assert report.accepted == []
    assert report.failed_sample_ids == ["S1"]


def test_batch_sweep_is_duplicate_safe(pipeline, telemetry, repository) -> None:
    sample = TelemetrySample(id="S1", device_id="D1", speed=130)
    telemetry.samples = [sample, sample]

    async def scenario():
        first = await pipeline.run_batch_sweep()
        second = await pipeline.run_batch_sweep()
        return first, second

    first, second = asyncio.run(scenario())

    assert len(first.accepted) == 1
    assert second.accepted == []
    assert len(repository.alerts) == 1


def test_batch_sweep_respects_limit(pipeline, telemetry) -> None:
    telemetry.samples = [TelemetrySample(id=f"S{i}", device_id="D1") for i in range(80)]

    assert asyncio.run(pipeline.run_batch_sweep(limit=50)).scanned == 50


def test_batch_sweep_bounds_concurrency(gate) -> None:
    in_flight = 0
    peak = 0

    class SlowResolver:
        async def resolve_vehicle_id(self, device_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return None

    samples = [TelemetrySample(id=f"S{i}", device_id=f"D{i}") for i in range(20)]
    pipeline = AlertPipeline(resolver=SlowResolver(), gate=gate,
                             telemetry=InMemoryTelemetryRepository(samples), concurrency=4)

    asyncio.run(pipeline.run_batch_sweep())

    assert 1 < peak <= 4


def test_batch_sweep_needs_telemetry_source(resolver, gate) -> None:
    pipeline = AlertPipeline(resolver=resolver, gate=gate)

    with pytest.raises(RuntimeError):
        asyncio.run(pipeline.run_batch_sweep())


def test_invalid_pipeline_settings_are_rejected(resolver, gate) -> None:
    with pytest.raises(ValueError):
        AlertPipeline(resolver=resolver, gate=gate, max_retries=0)
    with pytest.raises(ValueError):
        AlertPipeline(resolver=resolver, gate=gate, concurrency=0)


def test_repeated_sweeps_do_not_realert_an_old_sample(pipeline, telemetry, repository, clock) -> None:
    telemetry.samples = [TelemetrySample(id="S1", device_id="D1", speed=130, recorded_at=clock.now)]

    async def scenario():
        accepted = []
        for _ in range(3):
            report = await pipeline.run_batch_sweep()
            accepted.append(len(report.accepted))
            clock.advance(61)
        return accepted

    assert asyncio.run(scenario()) == [1, 0, 0]
    assert len(repository.alerts) == 1


def test_sweep_alerts_newer_sample_after_cooldown(pipeline, telemetry, repository, clock) -> None:
    first = TelemetrySample(id="S1", device_id="D1", speed=130, recorded_at=clock.now)
    later = TelemetrySample(id="S2", device_id="D1", speed=135, recorded_at=clock.now + timedelta(seconds=90))

    async def scenario():
        telemetry.samples = [first]
        await pipeline.run_batch_sweep()
        telemetry.samples = [later, first]
        return await pipeline.run_batch_sweep()

    report = asyncio.run(scenario())

    assert [alert.recorded_at for alert in report.accepted] == [later.recorded_at]
    assert len(repository.alerts) == 2


@pytest.mark.parametrize(
    "position",
    [
        {"latitude": 95.0, "longitude": 0.0},
        {"latitude": 10.0, "longitude": -181.0},
        {"latitude": float("nan"), "longitude": 5.0},
        {"latitude": "no fix", "longitude": 5.0},
    ],
)
def test_bad_gps_fix_does_not_hide_speeding(resolver, gate, position) -> None:
    tracker = RecordingLocationTracker()
    pipeline = AlertPipeline(resolver=resolver, gate=gate, location_tracker=tracker)

    alert = asyncio.run(
        pipeline.process_telemetry_event({"device_id": "D1", "speed": 130, **position}, track_location=True)
    )

    assert alert is not None
    assert alert.type == AlertType.SPEEDING
    assert tracker.recorded == []


def test_unexpected_repository_error_is_contained(resolver, clock) -> None:
    repository = InMemoryAlertRepository(lookup_error=KeyError("alerts"))
    pipeline = AlertPipeline(resolver=resolver, gate=AlertGate(repository, clock=clock))

    async def scenario():
        failed = await pipeline.process_telemetry_event({"device_id": "D1", "speed": 130})
        repository.lookup_error = None
        return failed, await pipeline.process_telemetry_event({"device_id": "D1", "speed": 130})

    failed, recovered = asyncio.run(scenario())

    assert failed is None
    assert recovered is not None


def test_slow_notifier_does_not_hold_up_processing(resolver, gate) -> None:
    release = asyncio.Event()
    delivered = []

    class SlowNotifier:
        async def notify(self, alert):
            await release.wait()
            delivered.append(alert)

    pipeline = AlertPipeline(resolver=resolver, gate=gate, notifier=SlowNotifier())

    async def scenario():
        alert = await pipeline.process_telemetry_event({"device_id": "D1", "speed": 130})
        pending_before_release = list(delivered)
        release.set()
        await pipeline.flush_notifications()
        return alert, pending_before_release

    alert, pending_before_release = asyncio.run(scenario())

    assert pending_before_release == []
    assert delivered == [alert]
