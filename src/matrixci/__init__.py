from .loader import load_pipeline, load_from_dict
from .model import JobInstance, JobStatus, JobTemplate, PipelineDefinition, StepResult, StepTemplate
from .scheduler import Scheduler, plan, run_pipeline
from .report import RunReport, aggregate
# Imported last: loading the .matrix submodule rebinds the package attribute
# `matrix`, so the DSL function must be bound after it.
from .dsl import job, sh, template_ref, axes, legs, matrix, pipeline

__all__ = [
    "job", "sh", "template_ref", "axes", "legs", "matrix", "pipeline",
    "load_pipeline", "load_from_dict",
    "JobInstance", "JobStatus", "JobTemplate", "PipelineDefinition", "StepResult", "StepTemplate",
    "Scheduler", "plan", "run_pipeline",
    "RunReport", "aggregate",
]
