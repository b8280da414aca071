from taskpilot.backends.adapters import (
    ClaudeAdapter,
    CLIAdapter,
    CodexAdapter,
    ExecutionPlan,
    GeminiAdapter,
    MockAdapter,
    build_adapter,
)
from taskpilot.backends.failures import classify_adapter_failure
from taskpilot.backends.process import AsyncioProcessRunner, ProcessRunner

__all__ = [
    "AsyncioProcessRunner",
    "CLIAdapter",
    "ClaudeAdapter",
    "CodexAdapter",
    "ExecutionPlan",
    "GeminiAdapter",
    "MockAdapter",
    "ProcessRunner",
    "build_adapter",
    "classify_adapter_failure",
]
