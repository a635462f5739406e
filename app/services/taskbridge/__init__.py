from .container import TaskBridge, build_task_bridge
from .interactions import route_interaction
from .orchestrator import TaskWorkflowOrchestrator

__all__ = [
    "TaskBridge",
    "TaskWorkflowOrchestrator",
    "build_task_bridge",
    "route_interaction",
]
