"""
Tools Package

Tool implementations available to the agent inside the sandbox:

- process_registry: background process sessions with bounded output
- process_tool: the ``process`` tool that exposes the registry to the model
"""

from .process_registry import ProcessConfig, ProcessRegistry, ProcessSession
from .process_tool import PROCESS_TOOL_SCHEMA, handle_process_tool

__all__ = [
    "ProcessConfig",
    "ProcessRegistry",
    "ProcessSession",
    "PROCESS_TOOL_SCHEMA",
    "handle_process_tool",
]
