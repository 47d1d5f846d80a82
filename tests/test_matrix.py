"""Tests for matrix expansion into job instances."""

import pytest

from matrixci import axes, job, legs, matrix, pipeline, sh
from matrixci.config import EngineConfig
from matrixci.errors import DefinitionError, EvaluationError
from matrixci.matrix import expand_job, expand_pipeline, instance_id, matrix_combinations


def ids(instances):
    return [i.id for i in instances]


class TestInstanceId:
    def test_no_labels(self):
        assert instance_id("build", ()) == "build"

    def test_labels(self):
        assert instance_id("test", ("linux", "stable")) == "test[linux, stable]"


class TestExpandJob:
    def test_no_matrix_single_instance(self):
        j = job("lint", sh("clippy", "cargo clippy"))
        (inst,) = expand_job(j, {})
        assert inst.id == "lint"
        assert inst.axes == ()
        assert inst.display_name == "lint"

    def test_cross_product_order(self):
        j = job(
            "test",
            sh("t", "cargo test"),
            matrix=matrix(axes({"os": ["linux", "macos"], "rust": ["stable", "beta", "nightly"]})),
        )
        assert ids(expand_job(j, {})) == [
            "test[linux, stable]",
            "test[linux, beta]",
            "test[linux, nightly]",
            "test[macos, stable]",
            "test[macos, beta]",
            "test[macos, nightly]",
        ]

    def test_empty_axis_gives_zero_instances(self):
        j = job("test", sh("t", "x"), matrix=matrix(axes({"os": []})))
        assert expand_job(j, {}) == []

    def test_guarded_axis_set_false(self):
        cross = axes({"target": ["aarch64", "i686"]}, when="eq(parameters.cross, true)")
        j = job("cross", sh("t", "x"), matrix=matrix(cross))
        assert expand_job(j, {"cross": False}) == []
        assert ids(expand_job(j, {"cross": True})) == ["cross[aarch64]", "cross[i686]"]

    def test_guards_are_independent(self):
        native = axes({"os": ["linux"]})
        cross = axes({"target": ["arm"]}, when="parameters.cross")
        j = job("t", sh("t", "x"), matrix=matrix(native, cross))
        assert ids(expand_job(j, {"cross": False})) == ["t[linux]"]
        assert ids(expand_job(j, {"cross": True})) == ["t[linux]", "t[arm]"]

    def test_guard_with_undefined_parameter(self):
        j = job("t", sh("t", "x"), matrix=matrix(axes({"os": ["a"]}, when="parameters.missing")))
        with pytest.raises(EvaluationError):
            expand_job(j, {})

    def test_exclude(self):
        m = matrix(
            axes({"os": ["linux", "macos"], "rust": ["stable", "nightly"]}),
            exclude=[{"os": "macos", "rust": "nightly"}],
        )
        j = job("t", sh("t", "x"), matrix=m)
        assert ids(expand_job(j, {})) == ["t[linux, stable]", "t[linux, nightly]", "t[macos, stable]"]

    def test_named_legs(self):
        m = matrix(legs({
            "Linux": {"vmImage": "ubuntu-latest"},
            "MacOS": {"vmImage": "macOS-latest"},
            "Windows": {"vmImage": "windows-latest"},
        }))
        j = job("test", sh("t", "cargo test"), matrix=m, pool="$(vmImage)")
        insts = expand_job(j, {}, config=EngineConfig())
        assert ids(insts) == ["test[Linux]", "test[MacOS]", "test[Windows]"]
        assert [i.pool for i in insts] == ["ubuntu-latest", "macOS-latest", "windows-latest"]
        assert [i.variables["Agent.OS"] for i in insts] == ["Linux", "Darwin", "Windows_NT"]

    def test_pool_macro_must_resolve(self):
        j = job("t", sh("t", "x"), pool="$(vmImage)")
        with pytest.raises(EvaluationError):
            expand_job(j, {})

    def test_deterministic(self):
        j = job("t", sh("t", "x"), matrix=matrix(axes({"a": [1, 2], "b": ["x", "y"]})))
        assert ids(expand_job(j, {})) == ids(expand_job(j, {}))


class TestVariables:
    def test_precedence_global_job_binding(self):
        j = job(
            "t",
            sh("t", "echo $(rust) $(channel)"),
            matrix=matrix(axes({"rust": ["beta"]})),
            variables={"rust": "job", "channel": "job"},
        )
        (inst,) = expand_job(j, {}, {"rust": "global", "channel": "global", "only": "global"})
        assert inst.variables["rust"] == "beta"
        assert inst.variables["channel"] == "job"
        assert inst.variables["only"] == "global"
        assert inst.steps[0].run == "echo beta job"

    def test_unknown_macro_left_in_command(self):
        (inst,) = expand_job(job("t", sh("t", "echo $(date)")), {})
        assert inst.steps[0].run == "echo $(date)"

    def test_variables_reference_bindings(self):
        j = job(
            "t",
            sh("t", "build $(triple)"),
            matrix=matrix(axes({"arch": ["x86_64"]})),
            variables={"triple": "$(arch)-unknown-linux-gnu"},
        )
        (inst,) = expand_job(j, {})
        assert inst.steps[0].run == "build x86_64-unknown-linux-gnu"

    def test_job_identity_variables(self):
        j = job("t", sh("t", "x"), display_name="Test", matrix=matrix(axes({"os": ["linux"]})))
        (inst,) = expand_job(j, {})
        assert inst.display_name == "Test (linux)"
        assert inst.variables["Agent.JobName"] == "Test (linux)"
        assert inst.variables["System.JobId"] == "t[linux]"

    def test_pool_variables_from_config(self):
        config = EngineConfig(pool_variables={"gpu": {"Agent.OS": "Linux", "cuda": "12"}})
        (inst,) = expand_job(job("t", sh("t", "x"), pool="gpu"), {}, config=config)
        assert inst.variables["cuda"] == "12"
        assert inst.variables["Agent.Pool"] == "gpu"


class TestPolicies:
    def test_continue_on_error_per_instance(self):
        j = job(
            "test",
            sh("t", "x"),
            matrix=matrix(axes({"rust": ["stable", "nightly"]})),
            continue_on_error="$[eq(variables.rust, 'nightly')]",
        )
        stable, nightly = expand_job(j, {})
        assert stable.continue_on_error is False
        assert nightly.continue_on_error is True

    def test_step_condition_evaluated(self):
        j = job(
            "t",
            sh("linux only", "x", condition="eq(variables['Agent.OS'], 'Linux')"),
            matrix=matrix(legs({"Linux": {"vmImage": "ubuntu-latest"}, "Windows": {"vmImage": "windows-latest"}})),
            pool="$(vmImage)",
        )
        linux, windows = expand_job(j, {})
        assert linux.steps[0].condition is True
        assert windows.steps[0].condition is False

    def test_timeouts_in_seconds(self):
        j = job("t", sh("s", "x", timeout_minutes=2), timeout_minutes=0.5)
        (inst,) = expand_job(j, {})
        assert inst.timeout == 30
        assert inst.steps[0].timeout == 120

    def test_job_condition(self):
        j = job("t", sh("s", "x"), condition="eq(parameters.deploy, true)")
        (inst,) = expand_job(j, {"deploy": False})
        assert inst.condition is False


class TestExpandPipeline:
    def test_definition_order(self):
        p = pipeline(
            job("b", sh("s", "x")),
            job("a", sh("s", "x"), matrix=matrix(axes({"n": [1, 2]}))),
        )
        expanded = expand_pipeline(p)
        assert list(expanded) == ["b", "a"]
        assert ids(expanded["a"]) == ["a[1]", "a[2]"]

    def test_duplicate_job_id(self):
        p = pipeline(job("a", sh("s", "x")), job("a", sh("s", "y")))
        with pytest.raises(DefinitionError, match="Duplicate job id"):
            expand_pipeline(p)

    def test_duplicate_instance_id(self):
        m = matrix(axes({"os": ["linux"]}), axes({"os": ["linux"]}))
        with pytest.raises(DefinitionError, match="duplicate instance"):
            expand_pipeline(pipeline(job("a", sh("s", "x"), matrix=m)))


class TestMatrixCombinations:
    def test_variables_visible_to_guards(self):
        m = matrix(axes({"os": ["linux"]}, when="eq(variables.channel, 'ci')"))
        assert len(matrix_combinations(m, {}, {"channel": "ci"})) == 1
        assert matrix_combinations(m, {}, {"channel": "pr"}) == []
