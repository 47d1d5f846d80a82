import os
import threading
import time

import pytest

from matrixci.agent import LocalAgent
from matrixci.errors import TimeoutFailure

pytestmark = pytest.mark.skipif(os.name != "posix", reason="uses /bin/sh commands")


def test_exit_code_and_output(tmp_path):
    agent = LocalAgent(tmp_path, poll_interval=0.01)
    code, out = agent.run("echo hello; echo oops >&2; exit 3", {})
    assert code == 3
    assert "hello" in out
    assert "oops" in out


def test_env_and_workdir(tmp_path):
    (tmp_path / "marker.txt").write_text("here")
    agent = LocalAgent(tmp_path, poll_interval=0.01)
    code, out = agent.run('echo "$RUST"; cat marker.txt', {"RUST": "nightly"})
    assert code == 0
    assert out.split() == ["nightly", "here"]


def test_timeout_kills_process(tmp_path):
    agent = LocalAgent(tmp_path, poll_interval=0.01)
    started = time.monotonic()
    with pytest.raises(TimeoutFailure) as exc:
        agent.run("echo before; sleep 10", {}, timeout=0.3)
    assert time.monotonic() - started < 5
    assert "before" in exc.value.output


def test_cancel_stops_process(tmp_path):
    agent = LocalAgent(tmp_path, poll_interval=0.01)
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    started = time.monotonic()
    try:
        code, _ = agent.run("sleep 10", {}, cancel=cancel)
    finally:
        timer.cancel()
    assert code != 0
    assert time.monotonic() - started < 5


def test_missing_workdir(tmp_path):
    agent = LocalAgent(tmp_path / "nope")
    with pytest.raises(FileNotFoundError):
        agent.run("true", {})
