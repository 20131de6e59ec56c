import asyncio
import logging

import pytest

from shaderloop.collaborators import CaptureResult
from shaderloop.config import RunnerConfig, ShaderLoopConfig
from shaderloop.contracts import (
    CompilationError,
    GenerationInput,
    GenerationOutput,
    ProcessConfig,
    ProcessStatus,
    StepKind,
    StepStatus,
)
from shaderloop.errors import (
    CollaboratorError,
    InvalidRequestError,
    InvalidTransitionError,
    NoCodeFoundError,
    ProcessNotFoundError,
    StepNotFoundError,
    StepStateError,
)
from shaderloop.runner import ProcessRunner

from conftest import BASE_CODE, SCREENSHOT

MANUAL = {"auto_mode": False}
CLIENT = {"auto_mode": False, "server_capture": False}


async def _wait_for(repository, process_id, predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        process = await repository.get_process(process_id)
        if predicate(process):
            return process
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Condition not met; process is {process.status}")
        await asyncio.sleep(0.005)


def _kinds(process):
    return [s.kind for s in process.steps]


def _assert_single_flight(process):
    for kind in (
        StepKind.GENERATION,
        StepKind.CAPTURE,
        StepKind.EVALUATION,
        StepKind.IMPROVEMENT,
        StepKind.FIX,
    ):
        running = [s for s in process.steps_of(kind) if s.status == StepStatus.RUNNING]
        assert len(running) <= 1, f"{len(running)} running {kind.value} steps"


# ----------------------------------------------------------------------
# Main loop


@pytest.mark.asyncio
async def test_low_score_leads_to_improvement(runner, repository, studio):
    studio.scores = [45]
    process_id = await runner.start(
        "a red circle",
        ProcessConfig(max_iterations=3, target_score=80, auto_mode=False),
    )
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.CAPTURING
    assert _kinds(process) == [StepKind.GENERATION]
    assert process.steps[0].output.code

    count = await runner.trigger_server_capture(process_id)
    assert count == 9
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert _kinds(process) == [
        StepKind.GENERATION,
        StepKind.CAPTURE,
        StepKind.EVALUATION,
        StepKind.IMPROVEMENT,
    ]
    assert process.steps[2].output.score == 45
    assert process.status == ProcessStatus.CAPTURING
    assert process.result is None
    # The improvement was asked to work on the evaluated code and screenshots.
    role, code, feedback, images = studio.calls[-1]
    assert role == "improve"
    assert code == BASE_CODE
    assert feedback == "scored 45"
    assert len(images) == 9


@pytest.mark.asyncio
async def test_high_score_completes_without_iterations(runner, repository, studio):
    studio.scores = [85]
    process_id = await runner.start(
        "a red circle", {"max_iterations": 3, "target_score": 80}
    )
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    assert process.current_step == StepKind.COMPLETION
    assert process.completed_at is not None
    assert process.result.final_score == 85
    assert process.result.total_iterations == 0
    assert process.result.final_code == BASE_CODE
    assert _kinds(process) == [
        StepKind.GENERATION,
        StepKind.CAPTURE,
        StepKind.EVALUATION,
        StepKind.COMPLETION,
    ]
    completion = process.steps[-1]
    assert completion.status == StepStatus.COMPLETED
    assert completion.input.reason == "target_score"
    assert completion.output.result == process.result


@pytest.mark.asyncio
async def test_compilation_error_routes_to_fix(
    runner, repository, studio, capture_service
):
    capture_service.results = [
        CaptureResult(compilation_error=CompilationError(message="syntax error"))
    ]
    studio.gates["fix"] = asyncio.Event()
    process_id = await runner.start("a red circle")

    process = await _wait_for(
        repository, process_id, lambda p: p.status == ProcessStatus.FIXING
    )
    assert not process.steps_of(StepKind.EVALUATION)
    assert process.steps_of(StepKind.CAPTURE)[0].output.compilation_error.message == (
        "syntax error"
    )

    studio.gates["fix"].set()
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert _kinds(process) == [
        StepKind.GENERATION,
        StepKind.CAPTURE,
        StepKind.FIX,
        StepKind.CAPTURE,
        StepKind.EVALUATION,
        StepKind.COMPLETION,
    ]
    fixed = process.steps[2].output.code
    # The fixed code supersedes the generated code for the next capture.
    assert capture_service.calls == [BASE_CODE, fixed]
    assert process.result.final_code == fixed
    assert process.result.total_iterations == 0


def _compile_errors(count):
    return [
        CaptureResult(compilation_error=CompilationError(message="syntax error"))
        for _ in range(count)
    ]


@pytest.mark.asyncio
async def test_shader_that_never_compiles_fails_after_fix_limit(
    repository, studio, capture_service
):
    config = ShaderLoopConfig(runner=RunnerConfig(max_fix_attempts=2))
    runner = ProcessRunner(repository, studio, capture_service, config=config)
    capture_service.results = _compile_errors(30)

    process_id = await runner.start("a red circle", {"max_iterations": 1})
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.FAILED
    assert process.result is None
    assert _kinds(process) == [
        StepKind.GENERATION,
        StepKind.CAPTURE,
        StepKind.FIX,
        StepKind.CAPTURE,
        StepKind.FIX,
        StepKind.CAPTURE,
    ]
    updates = (await runner.get(process_id)).updates
    assert "after 2 fix attempts" in updates[-1].error

    retried = await runner.retry(process_id)
    assert not retried.ok
    assert "fix attempts" in retried.message
    assert runner.registry.lock_count() == 0
    await runner.shutdown()


@pytest.mark.asyncio
async def test_fix_limit_completes_with_best_evaluation(
    repository, studio, capture_service
):
    config = ShaderLoopConfig(runner=RunnerConfig(max_fix_attempts=2))
    runner = ProcessRunner(repository, studio, capture_service, config=config)
    capture_service.results = [
        CaptureResult(screenshots=[SCREENSHOT] * 9)
    ] + _compile_errors(30)
    studio.scores = [40]

    process_id = await runner.start("a red circle", {"max_iterations": 3})
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    assert len(process.steps_of(StepKind.FIX)) == 2
    assert process.result.final_score == 40
    assert process.result.final_code == BASE_CODE
    assert process.result.best_code == BASE_CODE
    assert process.result.total_iterations == 1
    assert process.steps[-1].kind == StepKind.COMPLETION
    assert process.steps[-1].input.reason == "fix_attempts"
    await runner.shutdown()


@pytest.mark.asyncio
async def test_max_iterations_completes_below_target(runner, repository, studio):
    studio.scores = [40, 50]
    process_id = await runner.start(
        "a red circle", {"max_iterations": 1, "target_score": 80}
    )
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    assert process.result.final_score == 50
    assert process.result.total_iterations == 1
    assert len(process.steps_of(StepKind.GENERATION)) == 1
    assert len(process.steps_of(StepKind.IMPROVEMENT)) == 1
    assert process.steps[-1].input.reason == "max_iterations"


@pytest.mark.asyncio
async def test_result_keeps_best_code(runner, repository, studio):
    studio.scores = [60, 40]
    process_id = await runner.start("a red circle", {"max_iterations": 1})
    await runner.wait_idle(process_id)

    result = (await repository.get_process(process_id)).result
    assert result.final_score == 40
    assert result.best_score == 60
    assert result.best_code == BASE_CODE
    assert result.final_code == f"{BASE_CODE}\n// improved 1"


@pytest.mark.asyncio
async def test_iterations_until_target(runner, repository, studio):
    studio.scores = [40, 50, 60, 90]
    process_id = await runner.start("a red circle", {"max_iterations": 5})
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    _assert_single_flight(process)
    assert process.result.total_iterations == 3
    assert process.result.final_score == 90
    assert len(process.steps_of(StepKind.EVALUATION)) == 4
    assert all(s.status == StepStatus.COMPLETED for s in process.steps)


@pytest.mark.asyncio
async def test_processes_run_independently(runner, repository, studio):
    studio.default_score = 95
    ids = [await runner.start(f"prompt {i}") for i in range(3)]
    await runner.wait_idle()

    for process_id in ids:
        process = await repository.get_process(process_id)
        assert process.status == ProcessStatus.COMPLETED
        assert process.steps[0].input.prompt == process.prompt


@pytest.mark.asyncio
async def test_start_requires_prompt(runner, repository):
    with pytest.raises(InvalidRequestError):
        await runner.start("   ")
    assert (await repository.list_processes()).total == 0


# ----------------------------------------------------------------------
# Updates


@pytest.mark.asyncio
async def test_updates_poll_since_last_timestamp(runner):
    process_id = await runner.start("a red circle")
    await runner.wait_idle(process_id)

    snapshot = await runner.get(process_id)
    updates = snapshot.updates
    timestamps = [u.timestamp for u in updates]
    assert timestamps == sorted(timestamps)
    assert len(set(timestamps)) == len(timestamps)
    assert updates[0].status == ProcessStatus.CREATED
    assert updates[-1].status == ProcessStatus.COMPLETED
    assert updates[-1].result is not None
    assert any(u.new_step_id for u in updates)

    middle = updates[len(updates) // 2]
    newer = (await runner.get(process_id, since=middle.timestamp)).updates
    assert [u.id for u in newer] == [u.id for u in updates if u.timestamp > middle.timestamp]
    assert (await runner.get(process_id, since=updates[-1].timestamp)).updates == []


@pytest.mark.asyncio
async def test_get_list_and_delete(runner, repository):
    process_id = await runner.start("a red circle")
    await runner.wait_idle(process_id)

    page = await runner.list(include_steps=True)
    assert page.total == 1
    assert page.items[0].steps_count == 4
    assert page.items[0].captures_count == 1
    assert page.items[0].preview_screenshots == [SCREENSHOT, SCREENSHOT]
    with pytest.raises(InvalidRequestError):
        await runner.list(page=0)

    assert await runner.delete(process_id)
    assert await runner.get(process_id) is None
    assert await repository.list_updates(process_id) == []
    assert not await runner.delete(process_id)


@pytest.mark.asyncio
async def test_delete_while_step_runs(runner, repository, studio, caplog):
    studio.gates["generate"] = asyncio.Event()
    process_id = await runner.start("a red circle")
    await _wait_for(repository, process_id, lambda p: studio.calls)

    assert await runner.delete(process_id)
    with caplog.at_level(logging.WARNING, logger="shaderloop"):
        studio.gates["generate"].set()
        await runner.wait_idle(process_id)

    assert await repository.get_process(process_id) is None
    assert await repository.list_updates(process_id) == []
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert "disappeared" in caplog.text
    assert runner.registry.lock_count() == 0


# ----------------------------------------------------------------------
# Client capture


@pytest.mark.asyncio
async def test_capture_step_creation_is_idempotent(runner, repository):
    process_id = await runner.start("a red circle", CLIENT)
    await runner.wait_idle(process_id)

    first = await runner.create_capture_step(process_id)
    second = await runner.create_capture_step(process_id)
    assert first == second

    process = await repository.get_process(process_id)
    captures = process.steps_of(StepKind.CAPTURE)
    assert len(captures) == 1
    assert captures[0].input.source == "client"
    assert captures[0].input.code == BASE_CODE


@pytest.mark.asyncio
async def test_concurrent_capture_step_creation(runner, repository):
    process_id = await runner.start("a red circle", CLIENT)
    await runner.wait_idle(process_id)

    ids = await asyncio.gather(
        *(runner.create_capture_step(process_id) for _ in range(5))
    )
    assert len(set(ids)) == 1
    process = await repository.get_process(process_id)
    _assert_single_flight(process)


@pytest.mark.asyncio
async def test_client_screenshots_drive_evaluation(runner, repository, studio):
    studio.scores = [90]
    process_id = await runner.start("a red circle", CLIENT)
    await runner.wait_idle(process_id)
    assert (await repository.get_process(process_id)).status == ProcessStatus.CAPTURING

    step_id = await runner.create_capture_step(process_id)
    await runner.submit_screenshots(process_id, step_id, [SCREENSHOT] * 3)
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    capture = process.find_step(step_id)
    assert capture.status == StepStatus.COMPLETED
    assert capture.output.screenshots == [SCREENSHOT] * 3
    assert capture.duration is not None
    role, code, images = studio.calls[1]
    assert role == "evaluate"
    assert code == BASE_CODE
    assert images == [SCREENSHOT] * 3


@pytest.mark.asyncio
async def test_client_compilation_error_routes_to_fix(runner, repository):
    process_id = await runner.start("a red circle", CLIENT)
    await runner.wait_idle(process_id)

    step_id = await runner.create_capture_step(process_id)
    await runner.submit_screenshots(
        process_id, step_id, [], {"message": "ERROR: 0:3: 'x' : undeclared"}
    )
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert _kinds(process) == [StepKind.GENERATION, StepKind.CAPTURE, StepKind.FIX]
    assert process.steps[2].input.error_message == "ERROR: 0:3: 'x' : undeclared"
    assert process.status == ProcessStatus.CAPTURING


@pytest.mark.asyncio
async def test_screenshots_wait_for_running_generation(runner, repository, studio):
    studio.gates["generate"] = asyncio.Event()
    process_id = await runner.start("a red circle", {"server_capture": False})
    await _wait_for(
        repository,
        process_id,
        lambda p: p.running_step(StepKind.GENERATION) is not None,
    )

    step_id = await runner.create_capture_step(process_id)
    submit = asyncio.create_task(
        runner.submit_screenshots(process_id, step_id, [SCREENSHOT] * 9)
    )
    await asyncio.sleep(0.03)
    assert not submit.done()

    studio.gates["generate"].set()
    await submit
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    _assert_single_flight(process)
    assert process.status == ProcessStatus.COMPLETED
    assert _kinds(process) == [
        StepKind.GENERATION,
        StepKind.CAPTURE,
        StepKind.EVALUATION,
        StepKind.COMPLETION,
    ]
    assert process.steps[2].input.code == BASE_CODE


@pytest.mark.asyncio
async def test_screenshots_give_up_when_code_never_arrives(runner, repository, studio):
    studio.gates["generate"] = asyncio.Event()
    process_id = await runner.start("a red circle", {"server_capture": False})
    await _wait_for(
        repository,
        process_id,
        lambda p: p.running_step(StepKind.GENERATION) is not None,
    )
    step_id = await runner.create_capture_step(process_id)

    with pytest.raises(NoCodeFoundError):
        await runner.submit_screenshots(process_id, step_id, [SCREENSHOT])

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.GENERATING
    assert process.find_step(step_id).status == StepStatus.RUNNING


@pytest.mark.asyncio
async def test_capture_requested_right_after_start(runner, repository, studio):
    process_id = await runner.start("a red circle", {"server_capture": False})
    step_id = await runner.create_capture_step(process_id)
    await runner.submit_screenshots(process_id, step_id, [SCREENSHOT] * 9)
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    _assert_single_flight(process)
    assert studio.calls[0] == ("generate", "a red circle")
    assert process.status == ProcessStatus.COMPLETED
    assert _kinds(process) == [
        StepKind.GENERATION,
        StepKind.CAPTURE,
        StepKind.EVALUATION,
        StepKind.COMPLETION,
    ]
    assert process.steps[2].input.code == BASE_CODE


@pytest.mark.asyncio
async def test_start_persists_generation_step(runner, repository):
    process_id = await runner.start("a red circle")

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.GENERATING
    assert _kinds(process) == [StepKind.GENERATION]
    assert process.steps[0].input.prompt == "a red circle"
    await runner.wait_idle(process_id)


@pytest.mark.asyncio
async def test_screenshot_submission_input_errors(runner, repository):
    process_id = await runner.start("a red circle", CLIENT)
    await runner.wait_idle(process_id)
    step_id = await runner.create_capture_step(process_id)
    before = await repository.get_process(process_id)

    with pytest.raises(InvalidRequestError):
        await runner.submit_screenshots(process_id, step_id, [])
    with pytest.raises(InvalidRequestError):
        await runner.submit_screenshots(process_id, "", [SCREENSHOT])
    with pytest.raises(StepNotFoundError):
        await runner.submit_screenshots(process_id, "missing-step", [SCREENSHOT])
    with pytest.raises(ProcessNotFoundError):
        await runner.submit_screenshots("missing-process", step_id, [SCREENSHOT])
    generation_id = before.steps[0].id
    with pytest.raises(InvalidRequestError):
        await runner.submit_screenshots(process_id, generation_id, [SCREENSHOT])

    after = await repository.get_process(process_id)
    assert after.status == before.status
    assert after.find_step(step_id).status == StepStatus.RUNNING


@pytest.mark.asyncio
async def test_finished_capture_step_rejects_second_submission(
    runner, repository, studio
):
    studio.scores = [30]
    process_id = await runner.start("a red circle", CLIENT)
    await runner.wait_idle(process_id)
    step_id = await runner.create_capture_step(process_id)
    await runner.submit_screenshots(process_id, step_id, [SCREENSHOT])
    await runner.wait_idle(process_id)

    with pytest.raises(StepStateError):
        await runner.submit_screenshots(process_id, step_id, [SCREENSHOT])


# ----------------------------------------------------------------------
# Server capture trigger


@pytest.mark.asyncio
async def test_server_capture_refused_while_client_capture_runs(runner, repository):
    process_id = await runner.start("a red circle", MANUAL)
    await runner.wait_idle(process_id)
    await runner.create_capture_step(process_id)

    with pytest.raises(InvalidTransitionError):
        await runner.trigger_server_capture(process_id)
    process = await repository.get_process(process_id)
    assert len(process.steps_of(StepKind.CAPTURE)) == 1


@pytest.mark.asyncio
async def test_server_capture_refused_for_halted_process(runner, repository):
    process_id = await runner.start("a red circle", MANUAL)
    await runner.wait_idle(process_id)
    await runner.stop(process_id)

    with pytest.raises(InvalidTransitionError):
        await runner.trigger_server_capture(process_id)
    with pytest.raises(ProcessNotFoundError):
        await runner.trigger_server_capture("missing")


@pytest.mark.asyncio
async def test_server_capture_needs_capture_service(repository, studio, runner_config):
    runner = ProcessRunner(repository, studio, config=runner_config)
    process_id = await runner.start("a red circle")
    await runner.wait_idle(process_id)

    # Without a capture service the process waits for client screenshots.
    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.CAPTURING
    with pytest.raises(InvalidRequestError):
        await runner.trigger_server_capture(process_id)
    await runner.shutdown()


# ----------------------------------------------------------------------
# Control surface


@pytest.mark.asyncio
async def test_pause_and_resume_while_capturing(runner, repository, studio):
    studio.scores = [88]
    process_id = await runner.start("a red circle", CLIENT)
    await runner.wait_idle(process_id)
    step_id = await runner.create_capture_step(process_id)

    paused = await runner.pause(process_id)
    assert paused.ok
    assert paused.process.status == ProcessStatus.PAUSED
    with pytest.raises(InvalidTransitionError):
        await runner.submit_screenshots(process_id, step_id, [SCREENSHOT])

    resumed = await runner.resume(process_id)
    assert resumed.ok
    await runner.wait_idle(process_id)
    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.CAPTURING
    assert process.current_step == StepKind.CAPTURE

    await runner.submit_screenshots(process_id, step_id, [SCREENSHOT])
    await runner.wait_idle(process_id)
    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    assert len(process.steps_of(StepKind.CAPTURE)) == 1


@pytest.mark.asyncio
async def test_pause_lets_running_step_finish_without_advancing(
    runner, repository, studio
):
    studio.gates["generate"] = asyncio.Event()
    process_id = await runner.start("a red circle")
    await _wait_for(repository, process_id, lambda p: studio.calls)
    assert (await repository.get_process(process_id)).status == ProcessStatus.GENERATING

    assert (await runner.pause(process_id)).ok
    studio.gates["generate"].set()
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.PAUSED
    assert _kinds(process) == [StepKind.GENERATION]
    assert process.steps[0].status == StepStatus.COMPLETED

    assert (await runner.resume(process_id)).ok
    await runner.wait_idle(process_id)
    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_before_generation_runs(runner, repository, studio):
    process_id = await runner.start("a red circle")
    assert (await runner.pause(process_id)).ok
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.PAUSED
    assert process.steps[0].status == StepStatus.RUNNING
    assert studio.calls == []

    assert (await runner.resume(process_id)).ok
    await runner.wait_idle(process_id)
    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    assert len(process.steps_of(StepKind.GENERATION)) == 1


@pytest.mark.asyncio
async def test_stop_before_generation_runs(runner, repository, studio):
    process_id = await runner.start("a red circle")
    assert (await runner.stop(process_id)).ok
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    assert process.steps[0].status == StepStatus.FAILED
    assert process.steps[0].error == "Process stopped"
    assert studio.calls == []


@pytest.mark.asyncio
async def test_stop_wins_over_late_step_result(runner, repository, studio):
    studio.scores = [10]
    studio.gates["evaluate"] = asyncio.Event()
    process_id = await runner.start("a red circle")
    await _wait_for(
        repository, process_id, lambda p: p.status == ProcessStatus.EVALUATING
    )

    stopped = await runner.stop(process_id)
    assert stopped.ok
    studio.gates["evaluate"].set()
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    assert process.result is None
    assert process.completed_at is not None
    # The in-flight evaluation is persisted but nothing follows it.
    assert process.steps[-1].kind == StepKind.EVALUATION
    assert process.steps[-1].status == StepStatus.COMPLETED
    assert not process.steps_of(StepKind.IMPROVEMENT)
    updates = (await runner.get(process_id)).updates
    assert updates[-1].status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_control_edge_cases(runner, repository):
    missing = await runner.pause("missing")
    assert not missing.ok
    assert missing.process is None
    with pytest.raises(InvalidRequestError):
        await runner.control("missing", "rewind")

    process_id = await runner.start("a red circle")
    await runner.wait_idle(process_id)

    assert not (await runner.resume(process_id)).ok
    assert not (await runner.retry(process_id)).ok
    assert not (await runner.pause(process_id)).ok
    again = await runner.control(process_id, "stop")
    assert again.ok
    assert again.message == "Process already completed"


@pytest.mark.asyncio
async def test_collaborator_failure_then_retry(runner, repository, studio):
    studio.failures["evaluate"] = CollaboratorError("vision model unavailable")
    process_id = await runner.start("a red circle")
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.FAILED
    failed = process.steps[-1]
    assert failed.kind == StepKind.EVALUATION
    assert failed.status == StepStatus.FAILED
    assert failed.error == "vision model unavailable"
    assert failed.output is None
    updates = (await runner.get(process_id)).updates
    assert updates[-1].error == "vision model unavailable"

    retried = await runner.control(process_id, "retry")
    assert retried.ok
    assert retried.process.status == ProcessStatus.EVALUATING
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.COMPLETED
    evaluations = process.steps_of(StepKind.EVALUATION)
    assert [s.status for s in evaluations] == [StepStatus.FAILED, StepStatus.COMPLETED]
    assert evaluations[0].input == evaluations[1].input


@pytest.mark.asyncio
async def test_collaborator_timeout_fails_process(repository, studio, capture_service):
    config = ShaderLoopConfig(runner=RunnerConfig(collaborator_timeout=0.05))
    runner = ProcessRunner(repository, studio, capture_service, config=config)
    studio.gates["generate"] = asyncio.Event()

    process_id = await runner.start("a red circle")
    await runner.wait_idle(process_id)

    process = await repository.get_process(process_id)
    assert process.status == ProcessStatus.FAILED
    assert "timed out" in process.steps[0].error
    await runner.shutdown()


# ----------------------------------------------------------------------
# Restart recovery


async def _interrupted_process(repository, process_id, status=ProcessStatus.GENERATING):
    await repository.create_process(
        process_id, "a red circle", ProcessStatus.CREATED, ProcessConfig()
    )
    await repository.update_process(
        process_id, status=status, current_step=StepKind.GENERATION
    )
    await repository.create_step(
        f"{process_id}-gen",
        process_id,
        StepKind.GENERATION,
        StepStatus.RUNNING,
        GenerationInput(prompt="a red circle"),
    )


async def _waiting_for_client(repository, process_id):
    await repository.create_process(
        process_id, "a red circle", ProcessStatus.CAPTURING, ProcessConfig()
    )
    await repository.create_step(
        f"{process_id}-gen",
        process_id,
        StepKind.GENERATION,
        StepStatus.RUNNING,
        GenerationInput(prompt="a red circle"),
    )
    await repository.update_step(
        f"{process_id}-gen",
        status=StepStatus.COMPLETED,
        output=GenerationOutput(code=BASE_CODE),
    )
    await repository.create_step(
        f"{process_id}-cap",
        process_id,
        StepKind.CAPTURE,
        StepStatus.RUNNING,
        {"code": BASE_CODE, "source": "client"},
    )


@pytest.mark.asyncio
async def test_recover_fails_interrupted_work(runner, repository):
    await _interrupted_process(repository, "interrupted")
    await _waiting_for_client(repository, "waiting")
    await repository.create_process(
        "paused", "a red circle", ProcessStatus.PAUSED, ProcessConfig()
    )
    await repository.create_process(
        "done", "a red circle", ProcessStatus.COMPLETED, ProcessConfig()
    )

    actions = await runner.recover()
    assert actions == {"interrupted": "failed", "waiting": "waiting", "paused": "paused"}

    interrupted = await repository.get_process("interrupted")
    assert interrupted.status == ProcessStatus.FAILED
    assert interrupted.steps[0].status == StepStatus.FAILED
    assert interrupted.steps[0].error == "Interrupted by restart"

    waiting = await repository.get_process("waiting")
    assert waiting.status == ProcessStatus.CAPTURING
    assert waiting.find_step("waiting-cap").status == StepStatus.RUNNING

    # A failed process can be retried after recovery.
    assert (await runner.retry("interrupted")).ok
    await runner.wait_idle("interrupted")
    assert (await repository.get_process("interrupted")).status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_recover_resumes_when_configured(repository, studio, capture_service):
    config = ShaderLoopConfig(runner=RunnerConfig(recovery_policy="resume"))
    runner = ProcessRunner(repository, studio, capture_service, config=config)
    await _interrupted_process(repository, "interrupted")

    actions = await runner.recover()
    assert actions == {"interrupted": "resumed"}
    await runner.wait_idle()

    process = await repository.get_process("interrupted")
    assert process.status == ProcessStatus.COMPLETED
    generations = process.steps_of(StepKind.GENERATION)
    assert [s.status for s in generations] == [StepStatus.FAILED, StepStatus.COMPLETED]
    await runner.shutdown()


# ----------------------------------------------------------------------
# Prompt history


@pytest.mark.asyncio
async def test_save_to_history_keeps_best_evaluation(runner, repository, studio):
    studio.scores = [60, 40]
    process_id = await runner.start("a red circle", {"max_iterations": 1})
    await runner.wait_idle(process_id)

    entry = await runner.save_to_history(process_id)
    assert entry.id == process_id
    assert entry.prompt == "a red circle"
    assert entry.code == BASE_CODE
    assert entry.screenshots
    assert entry.evaluation.score == 60
    assert entry.evaluation.feedback == "scored 60"
    assert [e.id for e in await repository.list_prompt_history()] == [process_id]


@pytest.mark.asyncio
async def test_save_to_history_before_evaluation(runner, repository):
    process_id = await runner.start("a red circle", MANUAL)
    await runner.wait_idle(process_id)

    entry = await runner.save_to_history(process_id)
    assert entry.code == BASE_CODE
    assert entry.screenshots == []
    assert entry.evaluation is None

    with pytest.raises(ProcessNotFoundError):
        await runner.save_to_history("missing")


@pytest.mark.asyncio
async def test_save_to_history_needs_code(runner, repository, studio):
    studio.failures["generate"] = CollaboratorError("model unavailable")
    process_id = await runner.start("a red circle")
    await runner.wait_idle(process_id)

    with pytest.raises(NoCodeFoundError):
        await runner.save_to_history(process_id)
    assert await repository.list_prompt_history() == []


@pytest.mark.asyncio
async def test_completed_processes_are_recorded_when_configured(
    repository, studio, capture_service
):
    config = ShaderLoopConfig(runner=RunnerConfig(record_history=True))
    runner = ProcessRunner(repository, studio, capture_service, config=config)
    studio.scores = [91]
    process_id = await runner.start("a red circle")
    await runner.wait_idle(process_id)

    entry = await repository.get_prompt(process_id)
    assert entry is not None
    assert entry.evaluation.score == 91
    await runner.shutdown()
