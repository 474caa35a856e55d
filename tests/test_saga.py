from __future__ import annotations

import threading
import time

import pytest

from stratus.backends.base import AdapterError, DeleteOutcome, ResourceHandle
from stratus.config import StageTimeouts
from stratus.services.constants import (
    RESOURCE_BUCKET,
    STAGE_COMPUTE,
    STAGE_DATABASE,
    STAGE_EDGE_ROUTING,
    STAGE_HEALTH_CHECK,
    STAGE_INITIALIZE,
    STAGE_ORDER,
    STAGE_STORAGE,
)
from stratus.services.errors import (
    HealthCheckTimeout,
    OperationCancelled,
    RollbackPartialFailure,
    StageFailure,
    StageTimeout,
)
from stratus.services.naming import derive_resource_names
from stratus.services.results import StageResult
from stratus.services.saga import (
    PipelineState,
    RollbackLedger,
    SagaExecutor,
    StageContext,
    StageState,
)
from stratus.services.stages import build_stages
from tests.conftest import counting_rng
from tests.request_utils import make_request


@pytest.fixture
def build_executor(fakes, allocator, settings):
    def _build(*, timeouts: StageTimeouts | None = None, verify=None) -> SagaExecutor:
        stages = build_stages(fakes.as_backends(), allocator, settings, counting_rng)
        return SagaExecutor(stages, timeouts=timeouts or settings.stage_timeouts, verify=verify)

    return _build


def _context(cancel: threading.Event | None = None, **overrides) -> StageContext:
    request = make_request(**overrides)
    return StageContext(request=request, names=derive_resource_names(request.instance_id), cancel=cancel)


def test_all_stages_succeed_in_order(build_executor, fakes, pool_member) -> None:
    ctx = _context()
    executor = build_executor()
    assert executor.stage_names == list(STAGE_ORDER)

    outcome = executor.execute(ctx)

    assert outcome.state == PipelineState.COMPLETED
    assert outcome.error is None
    assert [r.stage for r in outcome.results] == [
        STAGE_DATABASE,
        STAGE_STORAGE,
        STAGE_COMPUTE,
        STAGE_EDGE_ROUTING,
        STAGE_INITIALIZE,
    ]
    assert set(outcome.stage_states.values()) == {StageState.SUCCEEDED}
    assert [entry.stage for entry in ctx.ledger.entries()] == [
        STAGE_DATABASE,
        STAGE_STORAGE,
        STAGE_COMPUTE,
        STAGE_EDGE_ROUTING,
    ]
    assert fakes.live_resources() == {"databases": 1, "buckets": 1, "functions": 1, "distributions": 1}


def test_compute_receives_chained_environment(build_executor, fakes, pool_member) -> None:
    ctx = _context(environment={"FEATURE_FLAGS": "beta"}, compute_tier="medium")
    build_executor().execute(ctx)

    function = fakes.compute.functions[ctx.names.function_name]
    env = function["env"]
    assert env["DATABASE_URL"].startswith("postgresql://user_")
    assert ctx.names.database_name in env["DATABASE_URL"]
    assert env["S3_BUCKET"] == ctx.names.bucket_name
    assert env["S3_ACCESS_KEY_ID"] == "AKID0001"
    assert env["INSTANCE_ID"] == "inst-001"
    assert env["INSTANCE_URL"] == "https://acme.stratus.test"
    assert env["PORT"] == "8080"
    assert env["FEATURE_FLAGS"] == "beta"
    assert len(env["JWT_SECRET"]) == 64
    assert function["memory_mb"] == 1024
    assert function["version"] == "1.0.0"

    publish = next(kwargs for op, kwargs in fakes.edge.calls if op == "publish")
    assert publish["origin_url"] == f"https://{ctx.names.function_name}.lambda-url.test"
    assert publish["hostname"] == "acme.stratus.test"


def test_compute_failure_rolls_back_in_reverse_and_skips_later_stages(
    build_executor, fakes, allocator, pool_member
) -> None:
    fakes.compute.failures["deploy"] = AdapterError("function quota exceeded")
    outcome = build_executor().execute(_context())

    assert outcome.state == PipelineState.ROLLED_BACK
    assert isinstance(outcome.error, StageFailure)
    assert outcome.error.stage == STAGE_COMPUTE
    assert outcome.error.retry_safe is True
    assert outcome.stage_states[STAGE_COMPUTE] == StageState.FAILED
    assert outcome.stage_states[STAGE_EDGE_ROUTING] == StageState.PENDING
    assert outcome.stage_states[STAGE_INITIALIZE] == StageState.PENDING

    assert "publish" not in fakes.edge.ops()
    assert "initialize" not in fakes.instance.ops()
    assert fakes.live_resources() == {"databases": 0, "buckets": 0, "functions": 0, "distributions": 0}
    deletions = [op for op in fakes.journal if op in ("delete_bucket", "delete")]
    assert deletions == ["delete_bucket", "delete"]
    assert allocator.get_member(pool_member.id).current_count == 0


def test_failed_compensation_is_reported_and_others_still_run(build_executor, fakes, pool_member) -> None:
    fakes.compute.failures["deploy"] = AdapterError("function quota exceeded")
    fakes.storage.failures["delete_bucket"] = AdapterError("access denied")
    ctx = _context()

    outcome = build_executor().execute(ctx)

    assert isinstance(outcome.error, RollbackPartialFailure)
    assert outcome.error.retry_safe is False
    assert outcome.error.stage == STAGE_COMPUTE
    assert outcome.unresolved == [ResourceHandle(RESOURCE_BUCKET, ctx.names.bucket_name, "test-region")]
    assert isinstance(outcome.error.cause, StageFailure)
    # The database compensation still ran after the bucket failed.
    assert fakes.database.shared == {}


def test_shared_create_failure_returns_pool_slot(build_executor, fakes, allocator, pool_member) -> None:
    fakes.database.failures["create_shared"] = AdapterError("connection refused", category="retryable")

    outcome = build_executor().execute(_context())

    assert outcome.error.stage == STAGE_DATABASE
    assert allocator.get_member(pool_member.id).current_count == 0
    assert allocator.reservation_for("inst-001") is None
    assert "find_bucket" not in fakes.storage.ops()


def test_failed_database_delete_keeps_pool_slot(build_executor, fakes, allocator, pool_member) -> None:
    fakes.storage.failures["create_bucket"] = AdapterError("bucket limit reached")
    fakes.database.failures["delete"] = AdapterError("host unreachable")

    outcome = build_executor().execute(_context())

    assert isinstance(outcome.error, RollbackPartialFailure)
    assert allocator.get_member(pool_member.id).current_count == 1


def test_stage_returning_after_its_deadline_is_compensated(build_executor, fakes, pool_member) -> None:
    fakes.storage.failures["create_bucket"] = lambda: time.sleep(0.2)

    outcome = build_executor(timeouts=StageTimeouts(storage=0.05)).execute(_context())

    assert isinstance(outcome.error, StageFailure)
    assert outcome.error.stage == STAGE_STORAGE
    assert isinstance(outcome.error.cause, StageTimeout)
    assert fakes.storage.buckets == {}
    assert fakes.database.shared == {}
    assert "find_function" not in fakes.compute.ops()


def test_dedicated_wait_timeout_deletes_the_instance(build_executor, fakes) -> None:
    fakes.database.polls_before_ready = 10_000

    outcome = build_executor(timeouts=StageTimeouts(database=0.1)).execute(_context(database_tier="dedicated"))

    assert isinstance(outcome.error, StageFailure)
    assert outcome.error.stage == STAGE_DATABASE
    assert isinstance(outcome.error.cause, StageTimeout)
    assert fakes.database.dedicated == {}
    assert "delete" in fakes.database.ops()


def test_dedicated_database_is_polled_until_ready(build_executor, fakes) -> None:
    fakes.database.polls_before_ready = 2
    ctx = _context(database_tier="dedicated", database_quota_gb=5)

    outcome = build_executor().execute(ctx)

    assert outcome.completed
    assert fakes.database.ops().count("poll_ready") == 3
    create = next(kwargs for op, kwargs in fakes.database.calls if op == "create_dedicated")
    assert create["storage"] == 20
    database = ctx.results[STAGE_DATABASE]
    assert database.outputs["host"] == f"{ctx.names.dedicated_identifier}.rds.test"


def test_dedicated_database_still_creating_is_awaited_before_rotating(build_executor, fakes) -> None:
    fakes.database.polls_before_ready = 2
    ctx = _context(database_tier="dedicated")
    fakes.database.dedicated[ctx.names.dedicated_identifier] = {"spec": None, "polls": 0}

    outcome = build_executor().execute(ctx)

    assert outcome.completed
    database_ops = fakes.database.ops()
    assert "create_dedicated" not in database_ops
    assert "delete" not in database_ops
    assert database_ops.index("reset_password") > database_ops.index("poll_ready")
    assert database_ops.count("poll_ready") == 3
    database = ctx.results[STAGE_DATABASE]
    assert database.adopted is True
    assert database.outputs["host"] == f"{ctx.names.dedicated_identifier}.rds.test"


def test_cancellation_between_stages_rolls_back(build_executor, fakes, pool_member) -> None:
    cancel = threading.Event()
    fakes.storage.failures["create_bucket"] = cancel.set

    outcome = build_executor().execute(_context(cancel=cancel))

    assert isinstance(outcome.error, OperationCancelled)
    assert outcome.error.kind == "Cancelled"
    assert outcome.error.stage == STAGE_COMPUTE
    assert outcome.stage_states[STAGE_COMPUTE] == StageState.PENDING
    assert "deploy" not in fakes.compute.ops()
    assert fakes.live_resources()["buckets"] == 0
    assert fakes.live_resources()["databases"] == 0


def test_cancellation_interrupts_dedicated_wait(build_executor, fakes) -> None:
    fakes.database.polls_before_ready = 10_000
    cancel = threading.Event()
    timer = threading.Timer(0.05, cancel.set)
    timer.start()

    started = time.monotonic()
    outcome = build_executor().execute(_context(cancel=cancel, database_tier="dedicated"))
    timer.cancel()

    assert isinstance(outcome.error, OperationCancelled)
    assert outcome.error.stage == STAGE_DATABASE
    assert fakes.database.dedicated == {}
    assert time.monotonic() - started < 5


def test_verification_failure_rolls_back_everything(build_executor, fakes, pool_member) -> None:
    def _verify(ctx: StageContext) -> None:
        raise HealthCheckTimeout("https://fn.test", attempts=3, elapsed=0.5)

    outcome = build_executor(verify=_verify).execute(_context())

    assert isinstance(outcome.error, HealthCheckTimeout)
    assert outcome.error.stage == STAGE_HEALTH_CHECK
    assert fakes.live_resources() == {"databases": 0, "buckets": 0, "functions": 0, "distributions": 0}
    assert "unpublish" in fakes.edge.ops()


def test_existing_bucket_is_adopted_with_fresh_key(build_executor, fakes, pool_member) -> None:
    ctx = _context()
    fakes.storage.buckets[ctx.names.bucket_name] = []

    outcome = build_executor().execute(ctx)

    storage = next(r for r in outcome.results if r.stage == STAGE_STORAGE)
    assert storage.adopted is True
    assert "create_bucket" not in fakes.storage.ops()
    assert "issue_access_key" in fakes.storage.ops()


class _Compensator:
    def __init__(self, name: str, journal: list[str], *, fail: bool = False) -> None:
        self.name = name
        self._journal = journal
        self._fail = fail

    def compensate(self, result: StageResult) -> DeleteOutcome:
        self._journal.append(result.handle.identifier)
        if self._fail:
            raise AdapterError("nope")
        return DeleteOutcome.DELETED


def test_ledger_unwinds_in_reverse_and_keeps_failures() -> None:
    journal: list[str] = []
    ledger = RollbackLedger()
    ledger.record(StageResult(stage="a", handle=ResourceHandle("x", "first")))
    ledger.record(StageResult(stage="b", handle=ResourceHandle("x", "second")))
    ledger.record(StageResult(stage="c", handle=ResourceHandle("x", "third")))
    ledger.record(StageResult(stage="c", handle=ResourceHandle("x", "third")))
    ledger.record(StageResult(stage="d", handle=None))

    unresolved = ledger.unwind(
        {
            "a": _Compensator("a", journal),
            "b": _Compensator("b", journal, fail=True),
            "c": _Compensator("c", journal),
        }
    )

    assert journal == ["third", "second", "first"]
    assert unresolved == [ResourceHandle("x", "second")]
    assert [entry.handle.identifier for entry in ledger.entries()] == ["second"]
