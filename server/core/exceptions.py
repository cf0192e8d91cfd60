"""Workflow engine exception hierarchy."""

from typing import Optional


class WorkflowError(Exception):
    """Base exception for all workflow engine errors."""


class CompileError(WorkflowError):
    """The graph cannot be turned into an action tree.

    Raised for a missing or duplicated trigger, dangling edges, cycles,
    parallel branches that reconverge at different nodes, and condition
    routes that run into a merge node.
    """

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class StepExecutionError(WorkflowError):
    """A step failed. Fatal to the chain it belongs to."""

    def __init__(self, step_id: str, node_type: str, message: str):
        self.step_id = step_id
        self.node_type = node_type
        super().__init__(f"Step {step_id} ({node_type}) failed: {message}")


class BranchError(WorkflowError):
    """One branch of a parallel region failed. Siblings still merge."""

    def __init__(self, parallel_id: str, branch_index: int, cause: BaseException):
        self.parallel_id = parallel_id
        self.branch_index = branch_index
        self.cause = cause
        super().__init__(f"Branch {branch_index + 1} of {parallel_id} failed: {cause}")

    def to_dict(self) -> dict:
        return {
            "parallel_id": self.parallel_id,
            "branch": self.branch_index,
            "error": str(self.cause),
        }


class QueueError(WorkflowError):
    """Job queue failure that retrying cannot fix, e.g. an invalid repeat definition."""


class ConfigNotFoundError(WorkflowError):
    """No stored workflow config for the requested workflow id."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"No workflow config stored for {workflow_id}")
