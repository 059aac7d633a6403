"""Shared fixtures for sandbox kernel tests."""

import sys
import textwrap
from collections import defaultdict

import pytest

import sandcastle.config
from sandcastle.kernel.sandbox import CleanupRegistry


FAKE_RUNTIME_SOURCE = textwrap.dedent(
    """
    import os
    import sys
    import time

    args = sys.argv[1:]
    log_path = os.environ.get("FAKE_RUNTIME_LOG")
    if log_path:
        with open(log_path, "a", encoding="utf-8") as fh:
            fh.write(" ".join(args) + "\\n")

    command = args[0] if args else ""
    image = args[-1] if args else ""

    if command == "images":
        if image.startswith("slow"):
            time.sleep(30)
        if image.startswith("present"):
            print("sha256:0123456789ab")
        sys.exit(0)

    if command == "pull":
        if image.startswith("slow"):
            time.sleep(30)
        if image.startswith("broken"):
            sys.stderr.write("manifest unknown\\n")
            sys.exit(1)
        sys.stdout.write("Pulling layer 1\\n")
        sys.stdout.flush()
        sys.stdout.write("   \\n")
        sys.stdout.write("Pull complete\\n")
        sys.exit(0)

    if command == "rm":
        sys.exit(0)

    sys.exit(2)
    """
)


@pytest.fixture
def fake_runtime(tmp_path, monkeypatch):
    """Executable stand-in for the container runtime CLI.

    Every call is appended to the file in ``FAKE_RUNTIME_LOG``.
    """
    if sys.platform == "win32":
        pytest.skip("fake runtime relies on a shebang script")

    script = tmp_path / "fake-runtime"
    script.write_text(f"#!{sys.executable}\n{FAKE_RUNTIME_SOURCE}", encoding="utf-8")
    script.chmod(0o755)

    log_path = tmp_path / "runtime-calls.log"
    monkeypatch.setenv("FAKE_RUNTIME_LOG", str(log_path))
    return script


@pytest.fixture
def runtime_calls(tmp_path):
    """Read back the calls recorded by ``fake_runtime``."""
    log_path = tmp_path / "runtime-calls.log"

    def read() -> list:
        if not log_path.exists():
            return []
        return log_path.read_text(encoding="utf-8").splitlines()

    return read


@pytest.fixture(autouse=True)
def logging_setups(monkeypatch):
    """Record logging setup calls instead of reconfiguring structlog globally."""
    calls = []
    monkeypatch.setattr(
        sandcastle.config,
        "configure_logging",
        lambda level="INFO", json_logs=False, **_kw: calls.append((level, json_logs)),
    )
    return calls


@pytest.fixture
def registry():
    """Fresh cleanup registry, isolated from the process-wide one."""
    return CleanupRegistry()


class MockProcess:
    """Process-like target that records exits instead of exiting."""

    def __init__(self):
        self.listeners = defaultdict(list)
        self.exit_code = None
        self.exit_calls = []

    def on(self, event, listener):
        self.listeners[event].append(listener)
        return self

    def remove_listener(self, event, listener):
        if listener in self.listeners[event]:
            self.listeners[event].remove(listener)
        return self

    def emit(self, event, *args):
        for listener in list(self.listeners[event]):
            listener(*args)

    def exit(self, code=None):
        self.exit_calls.append(code)


class KillableProcess(MockProcess):
    """Mock that also exposes ``pid`` and ``kill``, like the real interpreter."""

    def __init__(self, pid=4242, kill_error=None):
        super().__init__()
        self.pid = pid
        self.kill_error = kill_error
        self.kills = []

    def kill(self, pid, event):
        self.kills.append((pid, event))
        if self.kill_error is not None:
            raise self.kill_error


@pytest.fixture
def mock_process():
    return MockProcess()


@pytest.fixture
def killable_process():
    return KillableProcess()

