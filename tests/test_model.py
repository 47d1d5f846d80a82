import pytest

from matrixci import axes, job, legs, matrix, pipeline, sh, template_ref
from matrixci.errors import DefinitionError, InvalidTransition
from matrixci.model import JobInstance, JobStatus, StepKind


def instance(**kwargs):
    defaults = dict(id="a", job_id="a", display_name="a", axes=(), variables={}, steps=[])
    defaults.update(kwargs)
    return JobInstance(**defaults)


class TestTransitions:
    def test_normal_lifecycle(self):
        inst = instance(timeout=60)
        inst.transition(JobStatus.BLOCKED)
        inst.transition(JobStatus.READY)
        assert inst.deadline is None
        inst.transition(JobStatus.RUNNING)
        assert inst.started_at is not None
        assert inst.deadline == inst.started_at + 60
        inst.transition(JobStatus.SUCCEEDED)
        assert inst.is_terminal()
        assert inst.finished_at is not None
        assert inst.duration >= 0

    def test_skip_before_running(self):
        inst = instance()
        inst.transition(JobStatus.SKIPPED, "dependency b Failed")
        assert inst.reason == "dependency b Failed"
        assert inst.duration == 0.0

    @pytest.mark.parametrize(
        "path",
        [
            [JobStatus.RUNNING],
            [JobStatus.READY, JobStatus.SUCCEEDED],
            [JobStatus.READY, JobStatus.RUNNING, JobStatus.SKIPPED],
            [JobStatus.SKIPPED, JobStatus.READY],
            [JobStatus.READY, JobStatus.RUNNING, JobStatus.FAILED, JobStatus.SUCCEEDED],
        ],
    )
    def test_invalid(self, path):
        inst = instance()
        with pytest.raises(InvalidTransition):
            for target in path:
                inst.transition(target)

    def test_terminal_set(self):
        terminal = {s for s in JobStatus if s.terminal}
        assert terminal == {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.TIMED_OUT}


class TestDsl:
    def test_step_names(self):
        assert sh("", "cargo test\ncargo doc").name == "cargo test"
        assert sh("Run tests", "cargo test").name == "Run tests"
        assert template_ref("install-rust.yml").kind is StepKind.TEMPLATE

    def test_job_requires_steps(self):
        with pytest.raises(ValueError, match="at least one step"):
            job("empty")

    def test_job_depends_on_string(self):
        assert job("b", sh("s", "x"), depends_on="a").depends_on == ("a",)

    def test_matrix_from_plain_mapping(self):
        m = matrix({"os": ["linux"]}, legs({"x": {"v": 1}}), exclude=[{"os": "linux"}])
        assert len(m.axis_sets) == 2
        assert m.exclude == ({"os": "linux"},)

    def test_axes_validation(self):
        with pytest.raises(ValueError):
            axes({"os": [{"image": "no name"}]})

    def test_pipeline_parameters(self):
        p = pipeline(job("a", sh("s", "x")), parameters={"cross": True}, overrides={"cross": False})
        assert p.parameters["cross"] is False
        with pytest.raises(DefinitionError):
            pipeline(parameters={}, overrides={"nope": 1})

    def test_definition_job_lookup(self):
        p = pipeline(job("a", sh("s", "x")))
        assert p.job("a").id == "a"
        with pytest.raises(KeyError):
            p.job("b")
