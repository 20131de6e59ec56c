"""Command line interface for running and controlling shader processes."""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from shaderloop.config import load_config
from shaderloop.errors import NotFoundError, ShaderLoopError
from shaderloop.persistence import Process, PromptHistoryEntry, get_repository
from shaderloop.presets import get_preset, list_presets
from shaderloop.runner import ProcessRunner

app = typer.Typer(help="CLI for shaderloop processes")

# Command groups
process_app = typer.Typer(help="Commands for running and controlling processes")
presets_app = typer.Typer(help="Commands for browsing prompt presets")
history_app = typer.Typer(help="Commands for the saved prompt history")

app.add_typer(process_app, name="process")
app.add_typer(presets_app, name="presets")
app.add_typer(history_app, name="history")


@app.callback()
def main() -> None:
    """shaderloop CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_runner() -> ProcessRunner:
    return ProcessRunner.from_config(load_config(), repository=get_repository())


def _not_found() -> None:
    typer.echo("Process not found")
    raise typer.Exit(code=1)


def _fail(exc: ShaderLoopError) -> None:
    if isinstance(exc, NotFoundError):
        _not_found()
    typer.secho(f"Error: {exc}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _echo_process(process: Process) -> None:
    typer.echo(f"Process {process.id}: {process.status.value}")
    typer.echo(f"Prompt: {process.prompt}")
    if process.current_step:
        typer.echo(f"Current step: {process.current_step.value}")
    if process.result:
        r = process.result
        typer.echo(
            f"Result: score {r.final_score:g}/100 (best {r.best_score:g}), "
            f"{r.total_iterations} iterations, {r.total_duration:.1f}s"
        )


def _data_url(path: Path) -> str:
    media_type = mimetypes.guess_type(path.name)[0] or "image/png"
    encoded = base64.b64encode(path.read_bytes()).decode()
    return f"data:{media_type};base64,{encoded}"


@process_app.command("start")
def process_start(
    prompt: Optional[str] = typer.Argument(None, help="What the shader should show"),
    preset: Optional[str] = typer.Option(None, help="Use the prompt of a preset"),
    max_iterations: Optional[int] = typer.Option(None, min=0),
    target_score: Optional[float] = typer.Option(None, min=0, max=100),
    manual: bool = typer.Option(False, help="Wait for an explicit capture trigger"),
    client_capture: bool = typer.Option(
        False, help="Never capture on the server; wait for submitted screenshots"
    ),
) -> None:
    """
    Start a process and drive it until it completes or waits for a capture.

    Example:
        shaderloop process start "a red circle pulsing slowly"
        shaderloop process start --preset ocean-waves --max-iterations 2
    """
    if preset:
        found = get_preset(preset)
        if found is None:
            typer.secho(f"Unknown preset: {preset}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        prompt = prompt or found.prompt
    if not prompt:
        typer.secho("A prompt or --preset is required", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    runner = _build_runner()
    overrides = {
        "max_iterations": max_iterations,
        "target_score": target_score,
        "auto_mode": False if manual else None,
        "server_capture": False if client_capture else None,
    }

    async def _run() -> Optional[Process]:
        process_id = await runner.start(prompt, overrides)
        typer.echo(f"Process started: {process_id}")
        await runner.wait_idle(process_id)
        return await runner.repository.get_process(process_id)

    try:
        process = asyncio.run(_run())
    except ShaderLoopError as exc:
        _fail(exc)
    if process is not None:
        _echo_process(process)


@process_app.command("show")
def process_show(
    process_id: str,
    since: Optional[str] = typer.Option(
        None, help="Only list updates newer than this ISO timestamp"
    ),
) -> None:
    """
    Show a process with its steps and update history.

    Example:
        shaderloop process show 6f1c...
        # Output: Process 6f1c...: capturing
        #         - generation: completed (1.84s)
        #         - capture: running
    """
    after = datetime.fromisoformat(since) if since else None
    runner = _build_runner()
    snapshot = asyncio.run(runner.get(process_id, after))
    if snapshot is None:
        _not_found()
    _echo_process(snapshot.process)
    for step in snapshot.process.steps or []:
        line = f"- {step.kind.value}: {step.status.value}"
        if step.duration is not None:
            line += f" ({step.duration:.2f}s)"
        if step.error:
            line += f" error: {step.error}"
        typer.echo(line)
    if snapshot.updates:
        typer.echo("Updates:")
    for update in snapshot.updates:
        message = update.step_progress.message if update.step_progress else ""
        typer.echo(f"  {update.timestamp.isoformat()} {update.status.value} {message}")


@process_app.command("list")
def process_list(
    page: int = typer.Option(1, min=1),
    limit: int = typer.Option(20, min=1),
    with_steps: bool = typer.Option(False, help="Include step counts"),
) -> None:
    """List processes, newest first."""
    runner = _build_runner()
    result = asyncio.run(runner.list(page=page, limit=limit, include_steps=with_steps))
    if not result.items:
        typer.echo("No processes found")
        return
    for process in result.items:
        line = f"{process.id}\t{process.status.value}\t{process.prompt[:40]}"
        if with_steps:
            line += f"\t{process.steps_count} steps, {process.captures_count} captures"
        typer.echo(line)
    typer.echo(f"Page {result.page}/{result.total_pages} ({result.total} total)")


@process_app.command("control")
def process_control(process_id: str, action: str) -> None:
    """
    Pause, resume, stop or retry a process.

    Example:
        shaderloop process control 6f1c... pause
    """
    runner = _build_runner()

    async def _run():
        result = await runner.control(process_id, action)
        if result.ok and action in ("resume", "retry"):
            await runner.wait_idle(process_id)
        return result

    try:
        result = asyncio.run(_run())
    except ShaderLoopError as exc:
        _fail(exc)
    if result.process is None:
        _not_found()
    typer.echo(result.message)
    if not result.ok:
        raise typer.Exit(code=1)


@process_app.command("capture")
def process_capture(
    process_id: str,
    client: bool = typer.Option(
        False, help="Open a capture step for client screenshots instead"
    ),
) -> None:
    """Trigger a server capture, or open a client capture step."""
    runner = _build_runner()

    async def _run() -> str:
        if client:
            step_id = await runner.create_capture_step(process_id)
            return f"Capture step: {step_id}"
        count = await runner.trigger_server_capture(process_id)
        await runner.wait_idle(process_id)
        return f"Captured {count} screenshots"

    try:
        typer.echo(asyncio.run(_run()))
    except ShaderLoopError as exc:
        _fail(exc)


@process_app.command("screenshots")
def process_screenshots(
    process_id: str,
    step_id: str,
    images: Optional[List[Path]] = typer.Argument(None, exists=True, dir_okay=False),
    error: Optional[str] = typer.Option(None, help="Compilation error message"),
    detail: Optional[str] = typer.Option(None, help="Compilation info log"),
) -> None:
    """Submit screenshots (or a compilation error) for a capture step."""
    screenshots = [_data_url(path) for path in images or []]
    compilation_error = {"message": error, "detail": detail} if error else None
    runner = _build_runner()

    async def _run() -> None:
        await runner.submit_screenshots(
            process_id, step_id, screenshots, compilation_error
        )
        await runner.wait_idle(process_id)

    try:
        asyncio.run(_run())
    except ShaderLoopError as exc:
        _fail(exc)
    typer.echo(f"Submitted {len(screenshots)} screenshots")


@process_app.command("delete")
def process_delete(process_id: str) -> None:
    """Delete a process with its steps and updates."""
    runner = _build_runner()
    if not asyncio.run(runner.delete(process_id)):
        _not_found()
    typer.echo(f"Deleted process {process_id}")


@process_app.command("recover")
def process_recover() -> None:
    """Reconcile processes interrupted by a previous run."""
    runner = _build_runner()

    async def _run():
        actions = await runner.recover()
        await runner.wait_idle()
        return actions

    actions = asyncio.run(_run())
    if not actions:
        typer.echo("Nothing to recover")
        return
    for process_id, action in actions.items():
        typer.echo(f"{process_id}\t{action}")


@presets_app.command("list")
def presets_list(
    category: Optional[str] = typer.Option(None, help="Filter by category"),
) -> None:
    """List prompt presets."""
    presets = list_presets(category)
    if not presets:
        typer.echo("No presets found")
        return
    for preset in presets:
        typer.echo(f"{preset.id}\t{preset.category}\t{preset.difficulty}\t{preset.name}")



def _echo_entry(entry: PromptHistoryEntry) -> None:
    line = f"{entry.id}\t{entry.created_at.isoformat()}\t{entry.prompt[:40]}"
    if entry.evaluation:
        line += f"\tscore {entry.evaluation.score:g}/100"
    typer.echo(line)


@history_app.command("save")
def history_save(process_id: str) -> None:
    """
    Save the best shader of a process to the prompt history.

    Example:
        shaderloop history save 6f1c...
    """
    runner = _build_runner()
    try:
        entry = asyncio.run(runner.save_to_history(process_id))
    except ShaderLoopError as exc:
        _fail(exc)
    _echo_entry(entry)


@history_app.command("list")
def history_list(limit: int = typer.Option(150, min=1)) -> None:
    """List saved prompts, newest first."""
    entries = asyncio.run(get_repository().list_prompt_history(limit))
    if not entries:
        typer.echo("No saved prompts")
        return
    for entry in entries:
        _echo_entry(entry)


@history_app.command("show")
def history_show(entry_id: str) -> None:
    """Print a saved prompt with its shader code."""
    entry = asyncio.run(get_repository().get_prompt(entry_id))
    if entry is None:
        typer.echo("Prompt not found")
        raise typer.Exit(code=1)
    typer.echo(f"Prompt: {entry.prompt}")
    if entry.evaluation:
        typer.echo(
            f"Score: {entry.evaluation.score:g}/100 ({entry.evaluation.feedback})"
        )
    typer.echo(f"Screenshots: {len(entry.screenshots)}")
    typer.echo(entry.code)


@history_app.command("delete")
def history_delete(entry_id: str) -> None:
    """Delete a saved prompt."""
    if not asyncio.run(get_repository().delete_prompt(entry_id)):
        typer.echo("Prompt not found")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted prompt {entry_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
