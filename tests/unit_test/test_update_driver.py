"""
Unit tests for the component update driver.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from rollout_operator.factory import with_component, with_global_config, with_update_strategy
from rollout_operator.job_gate import JobGate
from rollout_operator.kube_types import (
    AppKey,
    ComponentObserved,
    ComponentStatus,
    JobSpec,
    JobState,
    Phase,
    StrategyType,
)
from rollout_operator.planner import Action, PlannedStep
from rollout_operator.strategy import resolve_bounds
from rollout_operator.update_driver import UpdateDriver
from tests.fakes import FakeJobBackend, FakeWorkloadBackend, make_application

KEY = AppKey(namespace="default", name="shop")
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
MIGRATE = JobSpec(image="shop/migrate:2.0.0", command=["migrate"])


def make_driver(workloads=None, jobs=None, **kwargs):
    workloads = workloads or FakeWorkloadBackend()
    jobs = jobs or FakeJobBackend()
    kwargs.setdefault("rng", Mock(random=Mock(return_value=0.0)))
    return UpdateDriver(workloads, JobGate(jobs), **kwargs), workloads, jobs


def step_for(application, name, action):
    spec = application.spec.components[name]
    bounds = resolve_bounds(application.spec.update_strategy, spec.replicas)
    return PlannedStep(name=name, component=spec, action=action, bounds=bounds)


def running(version, replicas):
    return ComponentObserved(
        exists=True,
        replicas=replicas,
        spec_replicas=replicas,
        ready_replicas=replicas,
        updated_replicas=replicas,
        current_version=version,
    )


class TestPrepare:
    """Observations are folded into status before planning."""

    def test_first_sight_records_running_version(self):
        driver, _, _ = make_driver()
        spec = make_application(KEY, with_component("api", version="2.0.0", image="shop/api")).spec.components["api"]
        status = driver.prepare("api", spec, None, running("1.0.0", 1), NOW)
        assert status.phase == Phase.PENDING
        assert status.current_version == "1.0.0"
        assert status.desired_version == "2.0.0"
        assert status.ready_replicas == 1

    def test_version_change_restarts_from_pending(self):
        driver, _, _ = make_driver()
        spec = make_application(KEY, with_component("api", version="3.0.0", image="shop/api")).spec.components["api"]
        previous = ComponentStatus(
            current_version="1.0.0",
            desired_version="2.0.0",
            phase=Phase.FAILED,
            attempts=3,
            next_retry_time=NOW + timedelta(minutes=5),
            resume_phase=Phase.PRE_JOB,
        )
        status = driver.prepare("api", spec, previous, running("1.0.0", 1), NOW)
        assert status.phase == Phase.PENDING
        assert status.desired_version == "3.0.0"
        assert status.attempts == 0
        assert status.next_retry_time is None
        assert status.resume_phase is None

    def test_version_change_opens_a_new_rollout(self):
        driver, _, _ = make_driver()
        spec = make_application(KEY, with_component("api", version="1.0.0", image="shop/api")).spec.components["api"]
        previous = ComponentStatus(
            current_version="2.0.0", desired_version="2.0.0", phase=Phase.CONVERGED, rollout=2
        )

        status = driver.prepare("api", spec, previous, running("2.0.0", 1), NOW, generation=3)
        assert status.rollout == 3

        # a store that reports no generation still moves forward
        status = driver.prepare("api", spec, previous, running("2.0.0", 1), NOW)
        assert status.rollout == 3

    def test_unobservable_workload_is_unknown_then_recovers(self):
        driver, _, _ = make_driver()
        spec = make_application(KEY, with_component("api", version="2.0.0", image="shop/api")).spec.components["api"]
        previous = ComponentStatus(current_version="1.0.0", desired_version="2.0.0", phase=Phase.UPDATING)

        unknown = driver.prepare("api", spec, previous, ComponentObserved(error="timeout"), NOW)
        assert unknown.phase == Phase.UNKNOWN
        assert unknown.resume_phase == Phase.UPDATING
        assert "timeout" in unknown.message

        recovered = driver.prepare("api", spec, unknown, running("1.0.0", 1), NOW)
        assert recovered.phase == Phase.UPDATING
        assert recovered.resume_phase is None


class TestAdvance:
    @pytest.mark.asyncio
    async def test_apply_enters_updating_with_resolved_image(self):
        application = make_application(
            KEY,
            with_component("api", version="2.0.0", image="shop/api:2.0.0", replicas=2),
            with_global_config(registry="registry.example.com"),
        )
        driver, workloads, _ = make_driver()
        status = ComponentStatus(current_version="1.0.0", desired_version="2.0.0", phase=Phase.PENDING)

        result = await driver.advance(
            application, step_for(application, "api", Action.APPLY), status, running("1.0.0", 2), NOW
        )

        assert result.phase == Phase.UPDATING
        assert result.phase_start_time == NOW
        assert workloads.applied == [("api", "2.0.0", 2)]
        assert workloads.get(KEY, "api").request.image == "registry.example.com/shop/api:2.0.0"
        assert result.message == "rolling out version 2.0.0: 2/2 updated, 2/2 ready"

    @pytest.mark.asyncio
    async def test_start_pre_job_dispatches(self):
        application = make_application(
            KEY, with_component("api", version="2.0.0", image="shop/api", pre_update_job=MIGRATE)
        )
        driver, workloads, jobs = make_driver()
        status = ComponentStatus(current_version="1.0.0", desired_version="2.0.0", phase=Phase.PENDING)

        result = await driver.advance(
            application, step_for(application, "api", Action.START_PRE_JOB), status, running("1.0.0", 1), NOW
        )

        assert result.phase == Phase.PRE_JOB
        assert result.job_name == "shop-api-pre-2-0-0-0-0"
        assert result.message == "waiting for pre-update job shop-api-pre-2-0-0-0-0"
        assert [job for _, _, job in jobs.dispatched] == [MIGRATE]
        assert workloads.applied == []

    @pytest.mark.asyncio
    async def test_failed_pre_job_backs_off(self):
        application = make_application(
            KEY, with_component("api", version="2.0.0", image="shop/api", pre_update_job=MIGRATE)
        )
        jobs = FakeJobBackend()
        jobs.queue_outcome("api", JobState.FAILED)
        driver, workloads, _ = make_driver(jobs=jobs, retry_base_seconds=10)
        status = ComponentStatus(current_version="1.0.0", desired_version="2.0.0", phase=Phase.PENDING)

        status = await driver.advance(
            application, step_for(application, "api", Action.START_PRE_JOB), status, running("1.0.0", 1), NOW
        )
        jobs.tick()
        status = await driver.advance(
            application, step_for(application, "api", Action.AWAIT_PRE_JOB), status, running("1.0.0", 1), NOW
        )

        assert status.phase == Phase.FAILED
        assert status.attempts == 1
        assert status.resume_phase == Phase.PRE_JOB
        assert status.next_retry_time == NOW + timedelta(seconds=10)
        assert "failed" in status.message
        assert workloads.applied == []

    @pytest.mark.asyncio
    async def test_pre_job_success_moves_to_updating(self):
        application = make_application(
            KEY, with_component("api", version="2.0.0", image="shop/api", pre_update_job=MIGRATE)
        )
        driver, _, jobs = make_driver()
        status = ComponentStatus(current_version="1.0.0", desired_version="2.0.0", phase=Phase.PENDING)

        status = await driver.advance(
            application, step_for(application, "api", Action.START_PRE_JOB), status, running("1.0.0", 1), NOW
        )
        jobs.tick()
        status = await driver.advance(
            application, step_for(application, "api", Action.AWAIT_PRE_JOB), status, running("1.0.0", 1), NOW
        )

        assert status.phase == Phase.UPDATING
        assert status.job_name is None

    @pytest.mark.asyncio
    async def test_job_deadline_fails_component(self):
        application = make_application(
            KEY, with_component("api", version="2.0.0", image="shop/api", pre_update_job=MIGRATE)
        )
        driver, _, _ = make_driver(job_deadline_seconds=60)
        status = ComponentStatus(
            current_version="1.0.0",
            desired_version="2.0.0",
            phase=Phase.PRE_JOB,
            job_name="shop-api-pre-2-0-0-0-0",
            phase_start_time=NOW - timedelta(seconds=61),
        )

        result = await driver.advance(
            application, step_for(application, "api", Action.AWAIT_PRE_JOB), status, running("1.0.0", 1), NOW
        )

        assert result.phase == Phase.FAILED
        assert "deadline" in result.message

    @pytest.mark.asyncio
    async def test_progress_deadline_fails_component(self):
        application = make_application(KEY, with_component("api", version="2.0.0", image="shop/api"))
        driver, _, _ = make_driver(progress_deadline_seconds=60)
        status = ComponentStatus(
            current_version="1.0.0",
            desired_version="2.0.0",
            phase=Phase.UPDATING,
            phase_start_time=NOW - timedelta(seconds=120),
        )
        observed = ComponentObserved(
            exists=True, replicas=1, spec_replicas=1, ready_replicas=0, updated_replicas=1, current_version="2.0.0"
        )

        result = await driver.advance(
            application, step_for(application, "api", Action.AWAIT_READY), status, observed, NOW
        )

        assert result.phase == Phase.FAILED
        assert result.resume_phase == Phase.UPDATING

    @pytest.mark.asyncio
    async def test_recreate_notices_scale_down(self):
        application = make_application(
            KEY,
            with_component("api", version="2.0.0", image="shop/api", replicas=2),
            with_update_strategy(type=StrategyType.RECREATE),
        )
        driver, _, _ = make_driver()
        status = ComponentStatus(current_version="1.0.0", desired_version="2.0.0", phase=Phase.UPDATING)
        emptied = ComponentObserved(exists=True, replicas=0, spec_replicas=0, current_version="2.0.0")

        result = await driver.advance(
            application, step_for(application, "api", Action.AWAIT_READY), status, emptied, NOW
        )

        assert result.scaled_down

    @pytest.mark.asyncio
    async def test_mark_converged_records_version(self):
        application = make_application(KEY, with_component("api", version="2.0.0", image="shop/api"))
        driver, _, _ = make_driver()
        status = ComponentStatus(current_version="1.0.0", desired_version="2.0.0", phase=Phase.UPDATING, attempts=2)

        result = await driver.advance(
            application, step_for(application, "api", Action.MARK_CONVERGED), status, running("2.0.0", 1), NOW
        )

        assert result.phase == Phase.CONVERGED
        assert result.current_version == "2.0.0"
        assert result.attempts == 0


class TestBackoff:
    def test_backoff_doubles_and_caps(self):
        driver, _, _ = make_driver(retry_base_seconds=10, retry_max_seconds=60)
        assert [driver.backoff(n) for n in (1, 2, 3, 4, 5)] == [10, 20, 40, 60, 60]

    def test_jitter_only_shortens(self):
        driver, _, _ = make_driver(retry_base_seconds=10, retry_jitter=0.5, rng=Mock(random=Mock(return_value=1.0)))
        assert driver.backoff(1) == 5

    def test_backoff_never_below_one_second(self):
        driver, _, _ = make_driver(retry_base_seconds=0.1)
        assert driver.backoff(1) == 1.0
