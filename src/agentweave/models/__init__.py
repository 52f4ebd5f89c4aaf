from agentweave.models.agent import AgentDefinition, AgentTaskStatus
from agentweave.models.conflict import FileResolution, MergeProbe, Resolution
from agentweave.models.lock import FileLock
from agentweave.models.review import BoundaryViolation, BranchReview
from agentweave.models.workflow import (
    STAGES,
    CheckResult,
    StageRecord,
    StageResult,
    WorkflowState,
)

__all__ = [
    "AgentDefinition",
    "AgentTaskStatus",
    "BoundaryViolation",
    "BranchReview",
    "CheckResult",
    "FileLock",
    "FileResolution",
    "MergeProbe",
    "Resolution",
    "STAGES",
    "StageRecord",
    "StageResult",
    "WorkflowState",
]
