from taskpilot.state.agent_registry import (
    AgentRegistry,
    AgentView,
    FileAgentRegistry,
    MemoryAgentRegistry,
    build_agent_registry,
)
from taskpilot.state.engine import StateEngine
from taskpilot.state.run_lock import ExecutionRunLock

__all__ = [
    "AgentRegistry",
    "AgentView",
    "ExecutionRunLock",
    "FileAgentRegistry",
    "MemoryAgentRegistry",
    "StateEngine",
    "build_agent_registry",
]
