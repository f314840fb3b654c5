"""
End-to-end flow tests against the in-memory Canvas double.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from conftest import FakeCanvas, make_deps, make_scores
from score_sync.core.errors import (
    FatalRemoteError, FlowCancelledError, SyncTimeoutError, SyncValidationError,
    TransientRemoteError, UserAbortError
)
from score_sync.models.flow import FlowState, FlowStatus, ResourceKind, SubmissionMode
from score_sync.services.sync.orchestrator import FlowOrchestrator
from score_sync.services.sync.report import build_error_summary


class SelfResolvingCanvas(FakeCanvas):
    """Record source that looks up correlation ids itself unless handed the run's map."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.received_ids = []

    async def fetch_records(self, scope_id, target_measurement_id=None, correlation_ids=None):
        self.received_ids.append(correlation_ids)
        if correlation_ids is None:
            correlation_ids = await self.fetch_correlation_ids(scope_id)
        return await super().fetch_records(scope_id, target_measurement_id, correlation_ids)


PER_RECORD_PATH = (
    FlowState.IDLE,
    FlowState.CHECKING_SETUP,
    FlowState.CALCULATING,
    FlowState.UPDATING_RECORDS,
    FlowState.VERIFYING,
    FlowState.VERIFYING_OVERRIDES,
    FlowState.COMPLETE,
    FlowState.IDLE,
)


class TestPerRecordFlow:
    """Small change sets are written one record at a time."""

    @pytest.mark.asyncio
    async def test_happy_path(self, fake_canvas, sink, fast_config):
        on_complete = AsyncMock()
        deps = make_deps(fake_canvas, sink=sink, on_complete=on_complete)

        result = await FlowOrchestrator("c1", deps, fast_config).run()

        assert result.status == FlowStatus.COMPLETED
        assert result.state_path == PER_RECORD_PATH
        assert result.submission_mode == SubmissionMode.PER_RECORD
        assert result.number_of_updates == 5
        assert result.verification_converged is True
        assert result.failures == ()
        assert fake_canvas.primary == {"100": 2.5, "101": 2.75, "102": 3.0, "103": 2.5, "104": 2.75}
        assert fake_canvas.overrides["enr-101"] == 68.75
        assert fake_canvas.overrides_enabled is True
        assert result.override_result.succeeded == 5
        assert result.override_result.mismatches == ()

        on_complete.assert_awaited_once()
        completion = on_complete.await_args.args[0]
        assert completion.scope_id == "c1"
        assert completion.number_of_updates == 5
        assert result.completion == completion
        assert any(m.startswith("5 scores updated successfully!") for m in sink.messages)

    @pytest.mark.asyncio
    async def test_second_run_finds_no_changes(self, fake_canvas, fast_config):
        on_complete = AsyncMock()
        await FlowOrchestrator("c1", make_deps(fake_canvas), fast_config).run()
        writes = len(fake_canvas.writes)

        result = await FlowOrchestrator(
            "c1", make_deps(fake_canvas, on_complete=on_complete), fast_config
        ).run()

        assert result.status == FlowStatus.NO_CHANGES
        assert result.state_path == (
            FlowState.IDLE,
            FlowState.CHECKING_SETUP,
            FlowState.CALCULATING,
            FlowState.COMPLETE,
            FlowState.IDLE,
        )
        assert result.number_of_updates == 0
        assert result.completion is None
        assert len(fake_canvas.writes) == writes
        on_complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_only_changed_records_are_written(self, fast_config):
        canvas = FakeCanvas(make_scores(4))
        canvas.sync_all()
        canvas.scores["102"]["o-1"] = 4.0

        result = await FlowOrchestrator("c1", make_deps(canvas), fast_config).run()

        assert result.number_of_updates == 1
        assert canvas.writes == [("102", 3.5)]
        assert canvas.override_writes == [("enr-102", 87.5)]

    @pytest.mark.asyncio
    async def test_permanent_record_failure_is_reported(self, fake_canvas, fast_config):
        fake_canvas.write_errors = {"101": FatalRemoteError("403 forbidden", status_code=403)}

        result = await FlowOrchestrator("c1", make_deps(fake_canvas), fast_config).run()

        assert result.status == FlowStatus.COMPLETED
        assert [r.record_id for r in result.failures] == ["101"]
        assert result.failures[0].attempts == 2 * fast_config.per_record_max_attempts
        # failed records are not waited for during verification
        assert result.verification_converged is True

        summary = build_error_summary(result.retried, result.failures)
        assert "101,2.75,6,UPDATE FAILED,403 forbidden" in summary

    @pytest.mark.asyncio
    async def test_non_convergence_still_completes(self, fake_canvas, fast_config):
        fake_canvas.read_values = AsyncMock(return_value={})

        result = await FlowOrchestrator("c1", make_deps(fake_canvas), fast_config).run()

        assert result.status == FlowStatus.COMPLETED
        assert result.verification_converged is False
        assert len(result.context.verification.mismatches) == 5
        assert fake_canvas.read_values.await_count == fast_config.verify_max_attempts

    @pytest.mark.asyncio
    async def test_overrides_disabled(self, fake_canvas, fast_config):
        result = await FlowOrchestrator(
            "c1", make_deps(fake_canvas, with_overrides=False), fast_config
        ).run()

        assert result.status == FlowStatus.COMPLETED
        assert result.state_path == PER_RECORD_PATH
        assert result.override_result is None
        assert fake_canvas.override_writes == []
        assert fake_canvas.correlation_fetches == 0
        assert fake_canvas.overrides_enabled is False

    @pytest.mark.asyncio
    async def test_transient_override_read_is_retried(self, fake_canvas, fast_config):
        reads = []
        read_overrides = fake_canvas.read_overrides

        async def flaky_read(scope_id):
            reads.append(scope_id)
            if len(reads) == 1:
                raise TransientRemoteError("503 overrides", status_code=503)
            return await read_overrides(scope_id)

        fake_canvas.read_overrides = flaky_read

        result = await FlowOrchestrator("c1", make_deps(fake_canvas), fast_config).run()

        assert result.status == FlowStatus.COMPLETED
        assert result.error is None
        assert len(reads) == 2
        assert result.override_result.mismatches == ()
        assert result.completion is not None

    @pytest.mark.asyncio
    async def test_correlation_ids_fetched_once_per_run(self, fast_config):
        canvas = SelfResolvingCanvas(make_scores(5))

        result = await FlowOrchestrator("c1", make_deps(canvas), fast_config).run()

        assert result.status == FlowStatus.COMPLETED
        assert canvas.correlation_fetches == 1
        assert len(canvas.received_ids) == 1
        assert dict(canvas.received_ids[0]) == canvas.correlation_ids
        assert result.override_result.succeeded == 5

    @pytest.mark.asyncio
    async def test_failing_completion_hook_is_logged(self, fake_canvas, fast_config):
        hook = AsyncMock(side_effect=RuntimeError("db down"))

        result = await FlowOrchestrator(
            "c1", make_deps(fake_canvas, on_complete=hook), fast_config
        ).run()

        assert result.status == FlowStatus.COMPLETED
        hook.assert_awaited_once()


class TestBatchFlow:
    """Large change sets are submitted as one job and polled."""

    @pytest.mark.asyncio
    async def test_batch_happy_path(self, sink, fast_config):
        canvas = FakeCanvas(make_scores(30))
        canvas.job_states = ["queued", "running", "completed"]

        result = await FlowOrchestrator("c1", make_deps(canvas, sink=sink), fast_config).run()

        assert result.status == FlowStatus.COMPLETED
        assert result.submission_mode == SubmissionMode.BATCH
        assert result.number_of_updates == 30
        assert FlowState.POLLING_PROGRESS in result.state_path
        assert result.context.job_handle == "job-1"
        assert len(canvas.batches) == 1
        assert len(canvas.batches[0]) == 30
        assert canvas.writes == []
        assert result.verification_converged is True
        assert result.override_result.succeeded == 30
        assert "Bulk uploading status: QUEUED." in sink.messages

    @pytest.mark.asyncio
    async def test_lower_threshold_selects_batch(self, fast_config):
        canvas = FakeCanvas(make_scores(30))
        canvas.sync_all()
        for user in ("100", "105", "110", "115", "120"):
            canvas.scores[user]["o-1"] = 4.0
        config = fast_config.model_copy(update={'per_record_threshold': 5})

        result = await FlowOrchestrator("c1", make_deps(canvas), config).run()

        assert result.submission_mode == SubmissionMode.BATCH
        assert result.number_of_updates == 5
        assert set(canvas.batches[0]) == {"100", "105", "110", "115", "120"}

    @pytest.mark.asyncio
    async def test_failed_job_fails_flow(self, fast_config):
        canvas = FakeCanvas(make_scores(30))
        canvas.job_states = ["queued", "failed"]

        result = await FlowOrchestrator("c1", make_deps(canvas), fast_config).run()

        assert result.status == FlowStatus.FAILED
        assert isinstance(result.error, FatalRemoteError)
        assert result.state_path[-3:] == (FlowState.POLLING_PROGRESS, FlowState.ERROR, FlowState.IDLE)
        assert result.completion is None

    @pytest.mark.asyncio
    async def test_poll_timeout_fails_flow(self, fast_config):
        canvas = FakeCanvas(make_scores(30))
        canvas.job_states = ["running"]
        config = fast_config.model_copy(update={'poll_timeout': 0.05, 'poll_interval': 0.01})

        result = await FlowOrchestrator("c1", make_deps(canvas), config).run()

        assert result.status == FlowStatus.FAILED
        assert isinstance(result.error, SyncTimeoutError)
        assert result.error.scope_id == "c1"


class TestProvisioning:
    """Missing resources are created after confirmation."""

    @pytest.mark.asyncio
    async def test_creates_missing_resources_in_order(self, fast_config):
        canvas = FakeCanvas(make_scores(3), with_resources=False)
        confirm = AsyncMock(return_value=True)

        result = await FlowOrchestrator("c1", make_deps(canvas, confirm=confirm), fast_config).run()

        assert result.status == FlowStatus.COMPLETED
        assert canvas.created == [ResourceKind.OUTCOME, ResourceKind.ASSIGNMENT, ResourceKind.RUBRIC]
        assert result.state_path[:8] == (
            FlowState.IDLE,
            FlowState.CHECKING_SETUP,
            FlowState.CREATING_OUTCOME,
            FlowState.CHECKING_SETUP,
            FlowState.CREATING_ASSIGNMENT,
            FlowState.CHECKING_SETUP,
            FlowState.CREATING_RUBRIC,
            FlowState.CHECKING_SETUP,
        )
        assert result.context.assignment_id == "asg-new"
        assert result.context.criterion_id == "crit-new"
        assert confirm.await_args_list[0].args[0] == (
            'Outcome "Current Score" not found.\nWould you like to create it?'
        )

    @pytest.mark.asyncio
    async def test_declined_prompt_aborts(self, fast_config):
        canvas = FakeCanvas(make_scores(3), with_resources=False)
        confirm = AsyncMock(return_value=False)

        result = await FlowOrchestrator("c1", make_deps(canvas, confirm=confirm), fast_config).run()

        assert result.status == FlowStatus.ABORTED
        assert isinstance(result.error, UserAbortError)
        assert result.state_path == (
            FlowState.IDLE, FlowState.CHECKING_SETUP, FlowState.ERROR, FlowState.IDLE
        )
        assert canvas.created == []
        assert canvas.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_provisioning_rounds_are_bounded(self, fast_config):
        canvas = FakeCanvas(make_scores(3), with_resources=False)
        canvas.create_succeeds = False

        result = await FlowOrchestrator("c1", make_deps(canvas), fast_config).run()

        assert result.status == FlowStatus.FAILED
        assert isinstance(result.error, FatalRemoteError)
        assert canvas.created == [ResourceKind.OUTCOME] * fast_config.max_provisioning_rounds


class TestFlowLifecycle:
    """Validation, cancellation and error routing."""

    @pytest.mark.asyncio
    async def test_missing_scope_id(self, fake_canvas, fast_config):
        orchestrator = FlowOrchestrator(None, make_deps(fake_canvas), fast_config)

        with pytest.raises(SyncValidationError) as exc_info:
            await orchestrator.run()

        assert exc_info.value.field == 'scope_id'
        assert orchestrator.machine.history == []

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, fake_canvas, fast_config):
        orchestrator = FlowOrchestrator("c1", make_deps(fake_canvas), fast_config)
        orchestrator.cancel("host shutting down")

        result = await orchestrator.run()

        assert result.status == FlowStatus.ABORTED
        assert isinstance(result.error, FlowCancelledError)
        assert fake_canvas.writes == []

    @pytest.mark.asyncio
    async def test_cancel_from_listener(self, fake_canvas, fast_config):
        orchestrator = FlowOrchestrator("c1", make_deps(fake_canvas), fast_config)

        def stop_on_update(record, ctx):
            if record.to_state == FlowState.UPDATING_RECORDS:
                orchestrator.cancel()

        orchestrator.add_listener(stop_on_update)
        result = await orchestrator.run()

        assert result.status == FlowStatus.ABORTED
        assert result.state_path[-3:] == (
            FlowState.UPDATING_RECORDS, FlowState.ERROR, FlowState.IDLE
        )
        assert fake_canvas.writes == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reraised(self, fake_canvas, fast_config):
        fake_canvas.fetch_records = AsyncMock(side_effect=KeyError("rollups"))
        orchestrator = FlowOrchestrator("c1", make_deps(fake_canvas), fast_config)

        with pytest.raises(KeyError):
            await orchestrator.run()

        assert orchestrator.machine.finished
        assert orchestrator.machine.state_path[-2:] == [FlowState.ERROR, FlowState.IDLE]
        assert isinstance(orchestrator.context.error, KeyError)

    @pytest.mark.asyncio
    async def test_orchestrator_runs_once(self, fake_canvas, fast_config):
        orchestrator = FlowOrchestrator("c1", make_deps(fake_canvas), fast_config)
        await orchestrator.run()

        with pytest.raises(RuntimeError):
            await orchestrator.run()

    @pytest.mark.asyncio
    async def test_listener_sees_every_transition(self, fake_canvas, fast_config):
        listener = Mock()
        orchestrator = FlowOrchestrator("c1", make_deps(fake_canvas), fast_config)
        orchestrator.add_listener(listener)

        result = await orchestrator.run()

        seen = [call.args[0].to_state for call in listener.call_args_list]
        assert tuple(seen) == result.state_path[1:]
        assert result.run_id == orchestrator.run_id

    @pytest.mark.asyncio
    async def test_errors_are_logged_with_run_id(self, fast_config):
        canvas = FakeCanvas(make_scores(3), with_resources=False)
        orchestrator = FlowOrchestrator(
            "c1", make_deps(canvas, confirm=AsyncMock(return_value=False)), fast_config
        )

        await orchestrator.run()

        errors = orchestrator.error_handler.get_recent_errors()
        assert len(errors) == 1
        assert errors[0]['error_type'] == 'UserAbortError'
        assert errors[0]['run_id'] == orchestrator.run_id
        assert errors[0]['scope_id'] == "c1"
