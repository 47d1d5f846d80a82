import threading
import time

import pytest

from matrixci.agent import Agent
from matrixci.config import EngineConfig
from matrixci.errors import DefinitionError
from matrixci.model import JobStatus, StepInstance, StepKind, StepStatus
from matrixci.runner import StepRunner, env_for


class MissingShellAgent(Agent):
    def run(self, command, env, timeout=None, cancel=None):
        raise FileNotFoundError("no such shell")


def run(runner, steps, variables=None, cancel=None, deadline=None):
    emitted = []
    outcome = runner.run(
        "job",
        steps,
        variables or {},
        emit=emitted.append,
        cancel=cancel or threading.Event(),
        deadline=deadline,
    )
    return outcome, emitted


class TestEnvFor:
    def test_names_are_normalized(self):
        env = env_for({"Agent.OS": "Linux", "rust": "beta", "Agent.JobName": "Test (a)"})
        assert env == {"AGENT_OS": "Linux", "RUST": "beta", "AGENT_JOBNAME": "Test (a)"}

    def test_values_are_text(self):
        assert env_for({"flag": True, "n": 2, "none": None}) == {"FLAG": "true", "N": "2", "NONE": ""}

    def test_non_scalars_skipped(self):
        assert env_for({"list": [1], "map": {"a": 1}}) == {}


class TestStepRunner:
    def test_success(self, agent):
        outcome, emitted = run(StepRunner(agent), [StepInstance("a", "ok hello")])
        assert outcome.status is JobStatus.SUCCEEDED
        assert emitted[0].status is StepStatus.SUCCEEDED
        assert emitted[0].exit_code == 0
        assert emitted[0].output == "hello"

    def test_step_env_overrides_variables(self, agent):
        step = StepInstance("a", "ok", env={"RUST": "override"})
        run(StepRunner(agent), [step], {"rust": "beta"})
        assert agent.calls[0][1]["RUST"] == "override"

    def test_output_is_tail_truncated(self, agent):
        runner = StepRunner(agent, EngineConfig(output_limit=5))
        _, emitted = run(runner, [StepInstance("a", "ok 0123456789")])
        assert emitted[0].output == "56789"

    def test_cancel_before_start(self, agent):
        cancel = threading.Event()
        cancel.set()
        outcome, emitted = run(StepRunner(agent), [StepInstance("a", "ok")], cancel=cancel)
        assert outcome.status is JobStatus.FAILED
        assert outcome.reason == "cancelled"
        assert emitted == []
        assert agent.calls == []

    def test_deadline_already_passed(self, agent):
        outcome, emitted = run(
            StepRunner(agent),
            [StepInstance("a", "ok")],
            deadline=time.monotonic() - 1,
        )
        assert outcome.status is JobStatus.TIMED_OUT
        assert emitted[0].status is StepStatus.TIMED_OUT
        assert agent.calls == []

    def test_agent_cannot_start_command(self):
        outcome, emitted = run(StepRunner(MissingShellAgent()), [StepInstance("a", "ok")])
        assert outcome.status is JobStatus.FAILED
        assert "could not start" in outcome.reason
        assert emitted[0].status is StepStatus.FAILED

    def test_template_step_rejected(self, agent):
        step = StepInstance("a", "install-rust.yml", kind=StepKind.TEMPLATE)
        with pytest.raises(DefinitionError):
            run(StepRunner(agent), [step])

    def test_skipped_steps_do_not_run(self, agent):
        steps = [StepInstance("a", "ok a", condition=False), StepInstance("b", "ok b")]
        outcome, emitted = run(StepRunner(agent), steps)
        assert outcome.status is JobStatus.SUCCEEDED
        assert [e.status for e in emitted] == [StepStatus.SKIPPED, StepStatus.SUCCEEDED]
        assert agent.commands() == ["ok b"]
