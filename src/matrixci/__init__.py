from .dsl import job, sh, uses, matrix, wf, JobBuilder, build
from .errors import DefinitionError, EmptyAxisError, ExpressionError, MatrixCIError
from .loader import load_workflow, parse_workflow, validate_workflow
from .matrix import expand, materialize, plan_workflow
from .model import Job, JobStatus, PipelineStatus, Step, WorkflowDefinition
from .runner import run_workflow

__version__ = "0.1.0"

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "JobBuilder", "build",
    "DefinitionError", "EmptyAxisError", "ExpressionError", "MatrixCIError",
    "load_workflow", "parse_workflow", "validate_workflow",
    "expand", "materialize", "plan_workflow",
    "Job", "JobStatus", "PipelineStatus", "Step", "WorkflowDefinition",
    "run_workflow",
]
