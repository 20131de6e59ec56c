"""Drive a shader process end to end using shaderloop.

With ``SHADERLOOP_CAPTURE_URL`` pointing at a render service and model
credentials in the environment, the loop runs against real collaborators.
Without a capture service the process stops at ``capturing`` and prints the
capture step that a browser client would fill in.
"""

import asyncio

from shaderloop import ProcessRunner, load_config
from shaderloop.persistence import SQLiteProcessRepository


async def main() -> None:
    config = load_config()
    repository = SQLiteProcessRepository("shaderloop.db")
    runner = ProcessRunner.from_config(config, repository=repository)

    process_id = await runner.start(
        "A glowing jellyfish drifting through a dark ocean",
        {"max_iterations": 2, "target_score": 75},
    )
    print(f"Started process {process_id}")
    await runner.wait_idle(process_id)

    snapshot = await runner.get(process_id)
    for update in snapshot.updates:
        message = update.step_progress.message if update.step_progress else ""
        print(f"{update.timestamp:%H:%M:%S} {update.status.value:<10} {message}")

    process = snapshot.process
    if process.result:
        print(f"Final score: {process.result.final_score:g}/100")
        print(process.result.best_code)
    elif process.status.value == "capturing":
        step_id = await runner.create_capture_step(process_id)
        print(f"Waiting for screenshots on capture step {step_id}")

    await runner.shutdown()
    repository.close()


if __name__ == "__main__":
    asyncio.run(main())
