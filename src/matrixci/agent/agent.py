# agent/agent.py
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Mapping, Optional, Tuple

from matrixci.config import EngineConfig
from matrixci.errors import AgentUnavailable


class Agent(ABC):
    """
    Something that can execute one command at a time for a job instance.

    The engine only needs:
      run(command, env, timeout, cancel) -> (exit_code, output)

    Implementations raise TimeoutFailure when `timeout` seconds pass, and
    stop early (returning whatever exit code the killed process produced)
    when `cancel` is set.
    """

    @abstractmethod
    def run(
        self,
        command: str,
        env: Mapping[str, str],
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[int, str]:
        raise NotImplementedError


class AgentPool:
    """
    Agent slots per pool. Only the scheduler loop touches this, so it keeps
    no lock of its own.
    """

    def __init__(self, config: EngineConfig):
        self.config = config
        self._busy: Dict[str, int] = {}

    def capacity(self, pool: str) -> int:
        return self.config.capacity(pool)

    def free(self, pool: str) -> int:
        return self.capacity(pool) - self._busy.get(pool, 0)

    def busy(self, pool: str) -> int:
        return self._busy.get(pool, 0)

    def acquire(self, pool: str) -> None:
        if self.free(pool) <= 0:
            raise AgentUnavailable(pool, self.capacity(pool))
        self._busy[pool] = self._busy.get(pool, 0) + 1

    def release(self, pool: str) -> None:
        if self._busy.get(pool, 0) <= 0:
            raise RuntimeError(f"release() on idle pool '{pool}'")
        self._busy[pool] -= 1

    def total_capacity(self, pools: Iterable[str]) -> int:
        return sum(self.capacity(p) for p in set(pools))
