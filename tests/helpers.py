"""Shared helpers for tests that run real child processes."""

import asyncio
import sys
import textwrap
import time

# Prints each argument as a line, then idles
SLEEPER = """
import sys, time
for line in sys.argv[1:]:
    print(line, flush=True)
time.sleep(60)
"""

# Waits argv[1] seconds, prints argv[2], then idles
DELAYED_LINE = """
import sys, time
time.sleep(float(sys.argv[1]))
print(sys.argv[2], flush=True)
time.sleep(60)
"""

# Exits immediately with status 1
CRASHER = """
import sys
print("bye", flush=True)
sys.exit(1)
"""

# Records a timestamp per run in argv[1]; the first argv[2] runs crash 0.2s after printing "ready"
COUNTED = """
import sys, time
from pathlib import Path
runs = Path(sys.argv[1])
with runs.open("a") as f:
    f.write(f"{time.time()}\\n")
count = len(runs.read_text().splitlines())
print("ready", flush=True)
if count <= int(sys.argv[2]):
    time.sleep(0.2)
    sys.exit(1)
time.sleep(60)
"""

# Records a run in argv[1]; argv[2:] say what each run does: "crash" exits 0.2s
# after printing "ready", "early" exits before it, anything else stays up
SCRIPTED = """
import sys, time
from pathlib import Path
runs = Path(sys.argv[1])
with runs.open("a") as f:
    f.write(f"{time.time()}\\n")
count = len(runs.read_text().splitlines())
plan = sys.argv[2:]
step = plan[count - 1] if count <= len(plan) else "up"
if step == "early":
    time.sleep(0.1)
    sys.exit(1)
print("ready", flush=True)
if step == "crash":
    time.sleep(0.2)
    sys.exit(1)
time.sleep(60)
"""


def python_command(script: str, *args) -> list[str]:
    return [sys.executable, "-c", textwrap.dedent(script), *map(str, args)]


def run_times(runs_file) -> list[float]:
    if not runs_file.exists():
        return []
    return [float(line) for line in runs_file.read_text().splitlines()]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Timed out waiting for condition")
        await asyncio.sleep(interval)


class DieRecorder:
    """Stands in for CompositeService.die: records messages and parks the caller."""

    def __init__(self):
        self.messages: list[str] = []
        self.called = asyncio.Event()

    async def __call__(self, message: str):
        self.messages.append(message)
        self.called.set()
        await asyncio.get_running_loop().create_future()
