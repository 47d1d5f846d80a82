"""Shared fixtures: a scripted agent and a silent console."""

import io
import threading
import time
from collections import defaultdict

import pytest

from matrixci.agent import Agent
from matrixci.config import EngineConfig
from matrixci.errors import TimeoutFailure
from matrixci.ui.console import Console


class ScriptedAgent(Agent):
    """
    Interprets a tiny command language instead of spawning processes:

      ok [text]      exit 0, output text
      exit N [text]  exit N
      sleep S        sleep S seconds, honouring timeout and cancel
      boom           raise RuntimeError
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.calls = []  # (command, env) in call order
        self.active = defaultdict(int)
        self.max_active = defaultdict(int)
        self.max_total = 0
        self._total = 0

    def commands(self):
        with self.lock:
            return [c for c, _ in self.calls]

    def _enter(self, pool):
        with self.lock:
            self.active[pool] += 1
            self._total += 1
            self.max_active[pool] = max(self.max_active[pool], self.active[pool])
            self.max_total = max(self.max_total, self._total)

    def _leave(self, pool):
        with self.lock:
            self.active[pool] -= 1
            self._total -= 1

    def run(self, command, env, timeout=None, cancel=None):
        with self.lock:
            self.calls.append((command, dict(env)))
        pool = env.get("AGENT_POOL", "default")
        self._enter(pool)
        try:
            word, _, rest = command.partition(" ")
            if word == "ok":
                return 0, rest
            if word == "exit":
                code, _, text = rest.partition(" ")
                return int(code), text
            if word == "sleep":
                return self._sleep(command, float(rest), timeout, cancel)
            if word == "boom":
                raise RuntimeError("agent exploded")
            return 0, command
        finally:
            self._leave(pool)

    def _sleep(self, command, seconds, timeout, cancel):
        start = time.monotonic()
        while True:
            elapsed = time.monotonic() - start
            if elapsed >= seconds:
                return 0, f"slept {seconds}"
            if timeout is not None and elapsed >= timeout:
                raise TimeoutFailure(command, timeout, "partial output")
            if cancel is not None and cancel.is_set():
                return -9, "killed"
            time.sleep(0.005)


@pytest.fixture
def agent():
    return ScriptedAgent()


@pytest.fixture
def console():
    return Console(stream=io.StringIO())


@pytest.fixture
def config():
    return EngineConfig(default_capacity=4, tick_seconds=0.01)
