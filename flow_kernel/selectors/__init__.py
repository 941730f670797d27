"""Read-only query selectors."""

from flow_kernel.selectors.workflow_selector import WorkflowSelector

__all__ = ["WorkflowSelector"]
