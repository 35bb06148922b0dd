"""
Autoscaling control loop for backend pools.
Compares smoothed pool load to policy thresholds on a fixed tick and asks the
provisioner for a new pool size. Ticks never overlap: a tick that is due while
the previous one still runs is skipped.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Set

from state.registry import BackendRegistry
from .errors import CapacityError, ProvisionerError, ScalingConflictError
from .utils.clock import SystemClock

logger = logging.getLogger(__name__)

HISTORY_SIZE = 100
SCALING_METRICS = ("cpu", "memory", "latency", "connections")


class ScalingAction(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    NONE = "none"


@dataclass
class ScalingPolicy:
    """Scaling policy configuration for a pool."""
    scale_up_threshold: float = 70.0
    scale_down_threshold: float = 30.0
    debounce_ticks: int = 3
    cooldown: float = 60.0
    step_size: int = 1
    min_replicas: int = 1
    max_replicas: int = 5
    metric: str = "cpu"

    def __post_init__(self):
        """Validate policy parameters."""
        if self.min_replicas < 0:
            raise ValueError("min_replicas must be >= 0")
        if self.max_replicas < self.min_replicas:
            raise ValueError(f"max_replicas ({self.max_replicas}) must be >= min_replicas ({self.min_replicas})")
        if self.scale_down_threshold >= self.scale_up_threshold:
            raise ValueError(
                f"scale_down_threshold ({self.scale_down_threshold}) must be < "
                f"scale_up_threshold ({self.scale_up_threshold})"
            )
        if self.debounce_ticks < 1:
            raise ValueError("debounce_ticks must be >= 1")
        if self.cooldown < 0:
            raise ValueError("cooldown must be >= 0")
        if self.step_size < 1:
            raise ValueError("step_size must be >= 1")
        if self.metric not in SCALING_METRICS:
            raise ValueError(f"metric must be one of {', '.join(SCALING_METRICS)}")

    def clamp(self, size: int) -> int:
        return max(self.min_replicas, min(size, self.max_replicas))


@dataclass(frozen=True)
class ScalingDecision:
    """One entry of the scaling audit log."""
    timestamp: float
    action: ScalingAction
    target_size: int
    reason: str
    current_size: int = 0
    metric_value: Optional[float] = None


@dataclass
class _PoolControlState:
    up_streak: int = 0
    down_streak: int = 0
    last_action_time: Optional[float] = None
    consecutive_failures: int = 0
    retry_after: Optional[float] = None


class AutoScaler:
    def __init__(self, registry: BackendRegistry, collector, provisioner,
                 is_leader: Optional[Callable[[], bool]] = None, tick_interval: float = 10.0,
                 provisioner_timeout: float = 5.0, max_backoff: float = 300.0,
                 history_size: int = HISTORY_SIZE, clock=None, exporter=None):
        self.registry = registry
        self.collector = collector
        self.provisioner = provisioner
        self.is_leader = is_leader or (lambda: True)
        self.tick_interval = tick_interval
        self.provisioner_timeout = provisioner_timeout
        self.max_backoff = max_backoff
        self.clock = clock or SystemClock()
        self.exporter = exporter

        self.policies: Dict[str, ScalingPolicy] = {}
        self.scale_decisions: Dict[str, Deque[ScalingDecision]] = defaultdict(lambda: deque(maxlen=history_size))
        self._state: Dict[str, _PoolControlState] = defaultdict(_PoolControlState)
        self._busy = False
        # pools with a provisioner.scale call in flight, automatic or manual
        self._scaling: Set[str] = set()
        self.skipped_ticks = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    def set_policy(self, pool_id: str, policy: ScalingPolicy):
        """Set the scaling policy for a pool."""
        self.policies[pool_id] = policy
        logger.info(
            f"Set scaling policy for {pool_id}: "
            f"min={policy.min_replicas}, max={policy.max_replicas}, metric={policy.metric}, "
            f"up={policy.scale_up_threshold}, down={policy.scale_down_threshold}, "
            f"debounce={policy.debounce_ticks}, cooldown={policy.cooldown}s"
        )

    def get_policy(self, pool_id: str) -> Optional[ScalingPolicy]:
        return self.policies.get(pool_id)

    def remove_policy(self, pool_id: str):
        self.policies.pop(pool_id, None)
        self._state.pop(pool_id, None)

    # ------------------------- Control loop -------------------------

    async def tick(self) -> Optional[List[ScalingDecision]]:
        """Evaluate every pool once. Returns None when skipped because a tick is running."""
        if self._busy:
            self.skipped_ticks += 1
            logger.warning("Autoscaler tick still running, skipping this one")
            return None
        self._busy = True
        try:
            decisions = []
            for pool_id in list(self.policies):
                try:
                    decisions.append(await self.evaluate_pool(pool_id))
                except Exception as e:
                    logger.error(f"[{pool_id}] Autoscaler evaluation failed: {e}")
            return decisions
        finally:
            self._busy = False

    async def evaluate_pool(self, pool_id: str) -> ScalingDecision:
        policy = self.policies[pool_id]
        state = self._state[pool_id]
        now = self.clock.now()
        current = self.registry.member_count(pool_id)
        value = self.collector.aggregate(pool_id).value(policy.metric)

        # consecutive breach streaks; an unknown reading breaks both
        if value is None:
            state.up_streak = state.down_streak = 0
        elif value > policy.scale_up_threshold:
            state.up_streak += 1
            state.down_streak = 0
        elif value < policy.scale_down_threshold:
            state.down_streak += 1
            state.up_streak = 0
        else:
            state.up_streak = state.down_streak = 0

        target, action, reason = self._desired_size(policy, state, current, value)
        if action == ScalingAction.NONE:
            return self._record(pool_id, ScalingAction.NONE, current, reason, current, value)

        if state.last_action_time is not None and now - state.last_action_time <= policy.cooldown:
            return self._record(pool_id, ScalingAction.NONE, current,
                                f"In cooldown ({policy.cooldown}s), wanted {action.value} to {target}", current, value)

        if state.retry_after is not None and now < state.retry_after:
            return self._record(pool_id, ScalingAction.NONE, current,
                                f"Backing off after {state.consecutive_failures} provisioner failure(s)", current, value)

        if not self.is_leader():
            return self._record(pool_id, ScalingAction.NONE, current, "Not the leader, scale call withheld", current, value)

        if pool_id in self._scaling:
            return self._record(pool_id, ScalingAction.NONE, current,
                                f"Scale call already in flight, wanted {action.value} to {target}", current, value)

        try:
            await self._call_provisioner(pool_id, target)
        except Exception as e:
            error = e if isinstance(e, ProvisionerError) else ProvisionerError(f"Provisioner call failed: {e!r}")
            state.consecutive_failures += 1
            backoff = min(self.tick_interval * 2 ** (state.consecutive_failures - 1), self.max_backoff)
            state.retry_after = now + backoff
            logger.error(f"[{pool_id}] {error}; retrying in {backoff:.0f}s")
            return self._record(pool_id, ScalingAction.NONE, current, f"Provisioner error: {error}", current, value)

        state.last_action_time = now
        state.up_streak = state.down_streak = 0
        state.consecutive_failures = 0
        state.retry_after = None
        logger.info(f"[{pool_id}] SCALING: {reason}, {current} -> {target}")
        return self._record(pool_id, action, target, reason, current, value)

    def _desired_size(self, policy: ScalingPolicy, state: _PoolControlState, current: int, value: Optional[float]):
        if current < policy.min_replicas:
            return policy.min_replicas, ScalingAction.SCALE_UP, f"Below minimum replicas: {current} < {policy.min_replicas}"
        if current > policy.max_replicas:
            return policy.max_replicas, ScalingAction.SCALE_DOWN, f"Above maximum replicas: {current} > {policy.max_replicas}"
        if value is None:
            return current, ScalingAction.NONE, f"No {policy.metric} reading available"
        if state.up_streak >= policy.debounce_ticks:
            if current >= policy.max_replicas:
                return current, ScalingAction.NONE, f"{policy.metric}={value:.1f} above threshold but already at max"
            target = min(current + policy.step_size, policy.max_replicas)
            return target, ScalingAction.SCALE_UP, (
                f"Scale up: {policy.metric}={value:.1f} > {policy.scale_up_threshold} "
                f"for {state.up_streak} ticks"
            )
        if state.down_streak >= policy.debounce_ticks:
            if current <= policy.min_replicas:
                return current, ScalingAction.NONE, f"{policy.metric}={value:.1f} below threshold but already at min"
            target = max(current - policy.step_size, policy.min_replicas)
            return target, ScalingAction.SCALE_DOWN, (
                f"Scale down: {policy.metric}={value:.1f} < {policy.scale_down_threshold} "
                f"for {state.down_streak} ticks"
            )
        if state.up_streak or state.down_streak:
            streak = max(state.up_streak, state.down_streak)
            return current, ScalingAction.NONE, f"Waiting for debounce ({streak}/{policy.debounce_ticks})"
        return current, ScalingAction.NONE, "Metrics within thresholds"

    def _record(self, pool_id: str, action: ScalingAction, target: int, reason: str,
                current: int, value: Optional[float]) -> ScalingDecision:
        decision = ScalingDecision(
            timestamp=self.clock.wall(),
            action=action,
            target_size=target,
            reason=reason,
            current_size=current,
            metric_value=value,
        )
        self.scale_decisions[pool_id].append(decision)
        if action == ScalingAction.NONE:
            logger.debug(f"[{pool_id}] No scaling: {reason}")
        if self.exporter:
            self.exporter.record_scaling_decision(pool_id, action.value)
        return decision

    # ------------------------- Manual scaling -------------------------

    async def request_scale(self, pool_id: str, requested: int) -> ScalingDecision:
        """Ask for an explicit pool size. Out-of-range sizes are clamped, not rejected.

        Manual requests obey the same cooldown as automatic ones and raise
        ScalingConflictError while another scale call for the pool is in flight.
        """
        policy = self.policies.get(pool_id)
        if policy is None:
            raise KeyError(pool_id)
        target = policy.clamp(requested)
        if target != requested:
            logger.warning(str(CapacityError(pool_id, requested, target)))
        current = self.registry.member_count(pool_id)
        if not self.is_leader():
            raise ProvisionerError("Not the leader, scale call withheld")

        state = self._state[pool_id]
        now = self.clock.now()
        if pool_id in self._scaling:
            raise ScalingConflictError(pool_id, "a scale call is already in flight")
        if state.last_action_time is not None and now - state.last_action_time <= policy.cooldown:
            remaining = policy.cooldown - (now - state.last_action_time)
            raise ScalingConflictError(pool_id, f"in cooldown for another {remaining:.0f}s")

        await self._call_provisioner(pool_id, target)
        state.last_action_time = now
        state.up_streak = state.down_streak = 0
        action = ScalingAction.SCALE_UP if target > current else (
            ScalingAction.SCALE_DOWN if target < current else ScalingAction.NONE)
        return self._record(pool_id, action, target, f"Manual scale request for {requested}", current, None)

    async def _call_provisioner(self, pool_id: str, target: int):
        self._scaling.add(pool_id)
        try:
            accepted = await asyncio.wait_for(self.provisioner.scale(pool_id, target), timeout=self.provisioner_timeout)
        finally:
            self._scaling.discard(pool_id)
        if accepted is False:
            raise ProvisionerError(f"Provisioner rejected scale of {pool_id} to {target}")

    # ------------------------- Scheduling -------------------------

    async def start(self):
        if not self._running:
            self._running = True
            self._task = asyncio.create_task(self._run())
            logger.info(f"Autoscaler started with {self.tick_interval}s tick")

    async def stop(self):
        self._running = False
        for task in (self._task, self._tick_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = self._tick_task = None
        logger.info("Autoscaler stopped")

    async def _run(self):
        while self._running:
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(self.tick())
            else:
                self.skipped_ticks += 1
                logger.warning("Autoscaler tick still running, skipping this one")
            await self.clock.sleep(self.tick_interval)

    def get_scaling_history(self, pool_id: str, limit: int = 10) -> List[ScalingDecision]:
        decisions = list(self.scale_decisions.get(pool_id, ()))
        return decisions[-limit:] if decisions else []

    def get_state(self, pool_id: str) -> Dict:
        state = self._state[pool_id]
        return {
            "up_streak": state.up_streak,
            "down_streak": state.down_streak,
            "last_action_time": state.last_action_time,
            "consecutive_failures": state.consecutive_failures,
            "retry_after": state.retry_after,
        }
