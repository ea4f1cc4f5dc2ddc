"""Planning, generation and job orchestration."""

from .generator import DerivativeGenerator, GenerationReport, Operation, OperationResult
from .pipeline import JobResult, assemble_documents, run_job
from .planner import plan_derivatives

__all__ = [
    "DerivativeGenerator",
    "GenerationReport",
    "JobResult",
    "Operation",
    "OperationResult",
    "assemble_documents",
    "plan_derivatives",
    "run_job",
]
