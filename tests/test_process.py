import asyncio
import signal

import pytest

from composite_service.errors import ProcessSpawnError
from composite_service.process import ProcessHandle
from composite_service.ready_helpers import once_output_line_is
from helpers import SLEEPER, python_command


@pytest.mark.asyncio
async def test_output_merges_stdout_and_stderr():
    command = python_command(
        """
        import sys
        print("out 1", flush=True)
        print("err 1", file=sys.stderr, flush=True)
        print("out 2", flush=True)
        """
    )
    handle = ProcessHandle(command)
    lines = handle.output.subscribe()

    await handle.spawn()
    collected = [line async for line in lines]

    assert sorted(collected) == ["err 1", "out 1", "out 2"]
    assert collected.index("out 1") < collected.index("out 2")
    await handle.ended


@pytest.mark.asyncio
async def test_exit_without_terminate_is_reported_as_crash_once():
    crashes = []
    command = python_command(
        """
        import sys
        for line in ["a", "b", "c"]:
            print(line, flush=True)
        sys.exit(3)
        """
    )
    handle = ProcessHandle(command, log_tail_length=2, on_crash=crashes.append)

    await handle.spawn()
    await asyncio.wait_for(handle.ended, 5)

    assert crashes == [handle]
    assert list(handle.log_tail) == ["b", "c"]
    assert handle.exit_code == 3
    assert handle.is_ended
    assert handle.output.closed


@pytest.mark.asyncio
async def test_terminate_is_not_a_crash_and_is_idempotent():
    crashes = []
    handle = ProcessHandle(python_command(SLEEPER, "up"), on_crash=crashes.append)
    up = asyncio.ensure_future(once_output_line_is(handle.output, "up"))

    await handle.spawn()
    await asyncio.wait_for(up, 5)
    assert not handle.is_ended

    first = handle.terminate()
    second = handle.terminate()
    await asyncio.wait_for(asyncio.gather(first, second), 5)

    assert handle.is_ended
    assert handle.exit_code == -signal.SIGTERM
    assert crashes == []


@pytest.mark.asyncio
async def test_terminate_after_exit_resolves_with_same_outcome():
    crashes = []
    handle = ProcessHandle(python_command("print('done')"), on_crash=crashes.append)

    await handle.spawn()
    await asyncio.wait_for(handle.ended, 5)

    assert await asyncio.wait_for(handle.terminate(), 1) == 0
    assert len(crashes) == 1


@pytest.mark.asyncio
async def test_terminate_before_spawn_stops_process_once_spawned():
    crashes = []
    handle = ProcessHandle(python_command(SLEEPER), on_crash=crashes.append)

    stopped = handle.terminate()
    await handle.spawn()
    await asyncio.wait_for(stopped, 5)

    assert handle.is_ended
    assert crashes == []


@pytest.mark.asyncio
async def test_spawn_error():
    handle = ProcessHandle(["/nonexistent/composite-service-test-program"])

    with pytest.raises(ProcessSpawnError, match="nonexistent"):
        await handle.spawn()

    assert handle.is_ended
    assert handle.pid is None
    await asyncio.wait_for(handle.terminate(), 1)


@pytest.mark.asyncio
async def test_force_kill_after_timeout():
    command = python_command(
        """
        import signal, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        print("up", flush=True)
        time.sleep(60)
        """
    )
    handle = ProcessHandle(command, force_kill_timeout=0.3)
    up = asyncio.ensure_future(once_output_line_is(handle.output, "up"))

    await handle.spawn()
    await asyncio.wait_for(up, 5)
    await asyncio.wait_for(handle.terminate(), 5)

    assert handle.exit_code == -signal.SIGKILL


@pytest.mark.asyncio
async def test_env_and_cwd_are_passed(tmp_path):
    command = python_command(
        """
        import os
        print(os.environ["GREETING"], flush=True)
        print(os.getcwd(), flush=True)
        """
    )
    handle = ProcessHandle(command, env={"GREETING": "hello"}, cwd=str(tmp_path))
    lines = handle.output.subscribe()

    await handle.spawn()
    collected = [line async for line in lines]

    assert collected[0] == "hello"
    assert collected[1] == str(tmp_path.resolve())
