# agent/executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Mapping, Optional, Tuple

from matrixci.errors import TimeoutFailure

from .agent import Agent

POLL_SECONDS = 0.1


def _kill(proc: subprocess.Popen) -> None:
    """Kill the whole process group so shell children die with the shell."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


class LocalAgent(Agent):
    """
    Runs commands through the local shell.

    Output (stdout + stderr, interleaved) is returned as text; the caller
    decides how much of it to keep.
    """

    def __init__(
        self,
        workdir: str | Path = ".",
        *,
        shell: Optional[str] = None,
        inherit_env: bool = True,
        poll_interval: float = POLL_SECONDS,
    ):
        self.workdir = Path(workdir).resolve()
        self.shell = shell
        self.inherit_env = inherit_env
        self.poll_interval = poll_interval

    def _env(self, env: Mapping[str, str]) -> dict:
        merged = os.environ.copy() if self.inherit_env else {}
        merged.update({k: str(v) for k, v in env.items()})
        return merged

    def run(
        self,
        command: str,
        env: Mapping[str, str],
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[int, str]:
        if not self.workdir.exists():
            raise FileNotFoundError(f"agent workdir not found: {self.workdir}")

        proc = subprocess.Popen(
            command,
            shell=True,
            executable=self.shell,
            cwd=str(self.workdir),
            env=self._env(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=(os.name == "posix"),
        )

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                return proc.returncode, out or ""
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.is_set():
                _kill(proc)
                out, _ = proc.communicate()
                return proc.returncode, out or ""

            if deadline is not None and time.monotonic() >= deadline:
                _kill(proc)
                out, _ = proc.communicate()
                raise TimeoutFailure(command, timeout, out or "")
