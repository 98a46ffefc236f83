from .dsl import job, sh, upload, deploy, use, matrix, wf
from .runner import run_dag, Executor
from .dag import build_graph, Graph
from .artifacts import ArtifactStore
from .gate import evaluate, PromotionPolicy, PromotionGate
from .model import JobDefinition, Run, RunStatus, JobStatus, PromotionDecision

__all__ = [
    "job", "sh", "upload", "deploy", "use", "matrix", "wf",
    "run_dag", "Executor", "build_graph", "Graph", "ArtifactStore",
    "evaluate", "PromotionPolicy", "PromotionGate",
    "JobDefinition", "Run", "RunStatus", "JobStatus", "PromotionDecision",
]
