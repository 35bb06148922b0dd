# tests/test_scaler.py
import asyncio

import pytest

from controller.errors import ProvisionerError, ScalingConflictError
from controller.scaler import AutoScaler, ScalingAction, ScalingPolicy
from metrics import MetricsExporter


@pytest.fixture
def scaler(registry, add_endpoint, fake_collector, fake_provisioner, clock):
    add_endpoint("a", 9001)
    add_endpoint("b", 9002)
    autoscaler = AutoScaler(registry, fake_collector, fake_provisioner, tick_interval=10.0,
                            provisioner_timeout=1.0, max_backoff=300.0, clock=clock)
    autoscaler.set_policy("web", ScalingPolicy(scale_up_threshold=70, scale_down_threshold=30,
                                               debounce_ticks=3, cooldown=60, min_replicas=1, max_replicas=5))
    return autoscaler


async def tick_at(scaler, clock, t):
    clock.advance(t - clock.now())
    decisions = await scaler.tick()
    return decisions[0]


@pytest.mark.asyncio
async def test_scale_up_only_after_debounce(scaler, fake_collector, fake_provisioner, clock):
    """cpu 80 against threshold 70 with debounce 3: scale up at t=20, not before"""
    fake_collector.set("web", cpu=80.0)

    first = await tick_at(scaler, clock, 0)
    second = await tick_at(scaler, clock, 10)
    assert first.action == ScalingAction.NONE
    assert second.action == ScalingAction.NONE
    assert fake_provisioner.scale_calls == []

    third = await tick_at(scaler, clock, 20)
    assert third.action == ScalingAction.SCALE_UP
    assert third.current_size == 2
    assert third.target_size == 3
    assert fake_provisioner.scale_calls == [("web", 3)]


@pytest.mark.asyncio
async def test_scale_down_after_debounce(scaler, fake_collector, fake_provisioner, clock):
    fake_collector.set("web", cpu=10.0)
    for t in (0, 10):
        await tick_at(scaler, clock, t)
    decision = await tick_at(scaler, clock, 20)
    assert decision.action == ScalingAction.SCALE_DOWN
    assert fake_provisioner.scale_calls == [("web", 1)]


@pytest.mark.asyncio
async def test_value_between_thresholds_resets_streaks(scaler, fake_collector, fake_provisioner, clock):
    for t, cpu in ((0, 80.0), (10, 80.0), (20, 50.0), (30, 80.0), (40, 80.0)):
        fake_collector.set("web", cpu=cpu)
        await tick_at(scaler, clock, t)
    assert fake_provisioner.scale_calls == []


@pytest.mark.asyncio
async def test_unknown_metric_resets_streaks(scaler, fake_collector, fake_provisioner, clock):
    for t, cpu in ((0, 80.0), (10, 80.0), (20, None), (30, 80.0), (40, 80.0)):
        fake_collector.set("web", cpu=cpu)
        decision = await tick_at(scaler, clock, t)
    assert fake_provisioner.scale_calls == []
    assert scaler.get_state("web")["up_streak"] == 2

    decision = await tick_at(scaler, clock, 50)
    assert decision.action == ScalingAction.SCALE_UP


@pytest.mark.asyncio
async def test_unknown_metric_is_never_treated_as_zero(scaler, fake_collector, fake_provisioner, clock):
    fake_collector.set("web", cpu=None)
    for t in range(0, 100, 10):
        decision = await tick_at(scaler, clock, t)
        assert decision.metric_value is None
    assert fake_provisioner.scale_calls == []


@pytest.mark.asyncio
async def test_cooldown_boundary_is_inclusive(scaler, fake_collector, fake_provisioner, clock):
    scaler.set_policy("web", ScalingPolicy(debounce_ticks=1, cooldown=60))
    fake_collector.set("web", cpu=80.0)

    assert (await tick_at(scaler, clock, 0)).action == ScalingAction.SCALE_UP
    blocked = await tick_at(scaler, clock, 60)
    assert blocked.action == ScalingAction.NONE
    assert "cooldown" in blocked.reason
    assert (await tick_at(scaler, clock, 61)).action == ScalingAction.SCALE_UP
    assert len(fake_provisioner.scale_calls) == 2


@pytest.mark.asyncio
async def test_below_min_scales_up_without_debounce(registry, fake_collector, fake_provisioner, clock):
    registry.ensure_pool("empty")
    autoscaler = AutoScaler(registry, fake_collector, fake_provisioner, clock=clock)
    autoscaler.set_policy("empty", ScalingPolicy(min_replicas=2, max_replicas=4, debounce_ticks=5))
    decision = (await autoscaler.tick())[0]
    assert decision.action == ScalingAction.SCALE_UP
    assert fake_provisioner.scale_calls == [("empty", 2)]


@pytest.mark.asyncio
async def test_above_max_scales_down_without_debounce(scaler, add_endpoint, fake_provisioner, clock):
    add_endpoint("c", 9003)
    scaler.set_policy("web", ScalingPolicy(min_replicas=1, max_replicas=2, debounce_ticks=5))
    decision = await tick_at(scaler, clock, 0)
    assert decision.action == ScalingAction.SCALE_DOWN
    assert fake_provisioner.scale_calls == [("web", 2)]


@pytest.mark.asyncio
async def test_no_scale_past_bounds(scaler, fake_collector, fake_provisioner, clock):
    scaler.set_policy("web", ScalingPolicy(min_replicas=1, max_replicas=2, debounce_ticks=1))
    fake_collector.set("web", cpu=95.0)
    decision = await tick_at(scaler, clock, 0)
    assert decision.action == ScalingAction.NONE
    assert "already at max" in decision.reason
    assert fake_provisioner.scale_calls == []


@pytest.mark.asyncio
async def test_step_size_is_clamped(scaler, fake_collector, fake_provisioner, clock):
    scaler.set_policy("web", ScalingPolicy(min_replicas=1, max_replicas=3, debounce_ticks=1, step_size=5))
    fake_collector.set("web", cpu=95.0)
    await tick_at(scaler, clock, 0)
    assert fake_provisioner.scale_calls == [("web", 3)]


@pytest.mark.asyncio
async def test_scale_call_withheld_when_not_leader(registry, add_endpoint, fake_collector, fake_provisioner, clock):
    add_endpoint("a", 9001)
    autoscaler = AutoScaler(registry, fake_collector, fake_provisioner, is_leader=lambda: False, clock=clock)
    autoscaler.set_policy("web", ScalingPolicy(debounce_ticks=1))
    fake_collector.set("web", cpu=99.0)
    decision = (await autoscaler.tick())[0]
    assert decision.action == ScalingAction.NONE
    assert "leader" in decision.reason
    assert fake_provisioner.scale_calls == []


@pytest.mark.asyncio
async def test_provisioner_failures_back_off_exponentially(scaler, fake_collector, fake_provisioner, clock):
    scaler.set_policy("web", ScalingPolicy(debounce_ticks=1, cooldown=0))
    fake_collector.set("web", cpu=99.0)
    fake_provisioner.fail_with = ProvisionerError("quota exceeded")

    decision = await tick_at(scaler, clock, 0)
    assert decision.action == ScalingAction.NONE
    assert "Provisioner error" in decision.reason
    assert scaler.get_state("web")["retry_after"] == 10.0

    await tick_at(scaler, clock, 5)
    assert len(fake_provisioner.scale_calls) == 1

    await tick_at(scaler, clock, 10)
    assert len(fake_provisioner.scale_calls) == 2
    assert scaler.get_state("web")["retry_after"] == 30.0

    await tick_at(scaler, clock, 20)
    assert len(fake_provisioner.scale_calls) == 2

    fake_provisioner.fail_with = None
    decision = await tick_at(scaler, clock, 30)
    assert decision.action == ScalingAction.SCALE_UP
    assert scaler.get_state("web")["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_backoff_is_capped(scaler, fake_collector, fake_provisioner, clock):
    scaler.max_backoff = 25.0
    scaler.set_policy("web", ScalingPolicy(debounce_ticks=1, cooldown=0))
    fake_collector.set("web", cpu=99.0)
    fake_provisioner.fail_with = ProvisionerError("down")
    t = 0
    for _ in range(5):
        await tick_at(scaler, clock, t)
        t = scaler.get_state("web")["retry_after"]
    state = scaler.get_state("web")
    assert state["consecutive_failures"] == 5
    assert state["retry_after"] - clock.now() == 25.0


@pytest.mark.asyncio
async def test_provisioner_timeout_is_a_failure(scaler, fake_collector, fake_provisioner, clock):
    scaler.provisioner_timeout = 0.01
    scaler.set_policy("web", ScalingPolicy(debounce_ticks=1))
    fake_collector.set("web", cpu=99.0)
    fake_provisioner.hang = True
    decision = await tick_at(scaler, clock, 0)
    assert decision.action == ScalingAction.NONE
    assert scaler.get_state("web")["consecutive_failures"] == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(scaler, fake_collector, fake_provisioner, clock):
    scaler.provisioner_timeout = 60.0
    scaler.set_policy("web", ScalingPolicy(debounce_ticks=1))
    fake_collector.set("web", cpu=99.0)
    fake_provisioner.hang = True

    running = asyncio.create_task(scaler.tick())
    while not fake_provisioner.scale_calls:
        await asyncio.sleep(0)

    assert await scaler.tick() is None
    assert scaler.skipped_ticks == 1

    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running
    fake_provisioner.hang = False
    assert await scaler.tick() is not None


@pytest.mark.asyncio
async def test_manual_scale_is_clamped(scaler, fake_provisioner):
    decision = await scaler.request_scale("web", 10)
    assert decision.target_size == 5
    assert decision.action == ScalingAction.SCALE_UP
    assert fake_provisioner.scale_calls == [("web", 5)]


@pytest.mark.asyncio
async def test_manual_scale_needs_policy_and_leadership(scaler, fake_provisioner):
    with pytest.raises(KeyError):
        await scaler.request_scale("nope", 2)
    scaler.is_leader = lambda: False
    with pytest.raises(ProvisionerError):
        await scaler.request_scale("web", 2)
    assert fake_provisioner.scale_calls == []


@pytest.mark.asyncio
async def test_manual_scale_respects_cooldown(scaler, fake_collector, fake_provisioner, clock):
    scaler.set_policy("web", ScalingPolicy(debounce_ticks=1, cooldown=60))
    fake_collector.set("web", cpu=99.0)
    assert (await tick_at(scaler, clock, 0)).action == ScalingAction.SCALE_UP

    clock.advance(1)
    with pytest.raises(ScalingConflictError, match="cooldown"):
        await scaler.request_scale("web", 1)
    assert fake_provisioner.scale_calls == [("web", 3)]

    clock.advance(60)
    decision = await scaler.request_scale("web", 1)
    assert decision.action == ScalingAction.SCALE_DOWN
    assert fake_provisioner.scale_calls == [("web", 3), ("web", 1)]


@pytest.mark.asyncio
async def test_manual_scale_starts_the_cooldown(scaler, fake_collector, fake_provisioner, clock):
    scaler.set_policy("web", ScalingPolicy(debounce_ticks=1, cooldown=60))
    await scaler.request_scale("web", 4)
    fake_collector.set("web", cpu=99.0)
    blocked = await tick_at(scaler, clock, 30)
    assert blocked.action == ScalingAction.NONE
    assert "cooldown" in blocked.reason
    assert fake_provisioner.scale_calls == [("web", 4)]


@pytest.mark.asyncio
async def test_manual_scale_refused_while_tick_scales(scaler, fake_collector, fake_provisioner, clock):
    scaler.provisioner_timeout = 60.0
    scaler.set_policy("web", ScalingPolicy(debounce_ticks=1, cooldown=0))
    fake_collector.set("web", cpu=99.0)
    fake_provisioner.hang = True

    running = asyncio.create_task(scaler.tick())
    while not fake_provisioner.scale_calls:
        await asyncio.sleep(0)

    with pytest.raises(ScalingConflictError, match="in flight"):
        await scaler.request_scale("web", 1)
    assert fake_provisioner.scale_calls == [("web", 3)]

    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running
    fake_provisioner.hang = False
    assert (await scaler.request_scale("web", 1)).action == ScalingAction.SCALE_DOWN


@pytest.mark.asyncio
async def test_history_is_bounded(registry, add_endpoint, fake_collector, fake_provisioner, clock):
    add_endpoint("a", 9001)
    autoscaler = AutoScaler(registry, fake_collector, fake_provisioner, history_size=3, clock=clock)
    autoscaler.set_policy("web", ScalingPolicy())
    fake_collector.set("web", cpu=50.0)
    for _ in range(5):
        await autoscaler.tick()
    assert len(autoscaler.get_scaling_history("web", limit=10)) == 3
    assert len(autoscaler.get_scaling_history("web", limit=2)) == 2


@pytest.mark.asyncio
async def test_decisions_exported(registry, add_endpoint, fake_collector, fake_provisioner, clock):
    add_endpoint("a", 9001)
    exporter = MetricsExporter()
    autoscaler = AutoScaler(registry, fake_collector, fake_provisioner, clock=clock, exporter=exporter)
    autoscaler.set_policy("web", ScalingPolicy(debounce_ticks=1))
    fake_collector.set("web", cpu=99.0)
    await autoscaler.tick()
    labels = {"pool": "web", "action": "scale_up"}
    assert exporter.registry.get_sample_value("poolkeeper_scaling_decisions_total", labels) == 1.0


@pytest.mark.asyncio
async def test_run_loop_ticks_on_interval(scaler, fake_collector, clock):
    fake_collector.set("web", cpu=50.0)
    await scaler.start()
    for _ in range(10):
        await asyncio.sleep(0)
    await scaler.stop()
    assert len(scaler.get_scaling_history("web", limit=100)) >= 1
    assert clock.now() >= 10.0


@pytest.mark.parametrize("kwargs", [
    {"min_replicas": 3, "max_replicas": 2},
    {"scale_up_threshold": 30, "scale_down_threshold": 30},
    {"debounce_ticks": 0},
    {"step_size": 0},
    {"metric": "rps"},
])
def test_invalid_policy(kwargs):
    with pytest.raises(ValueError):
        ScalingPolicy(**kwargs)
