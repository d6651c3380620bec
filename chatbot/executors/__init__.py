"""
Business node executors.

Importing this package registers every executor on ``executor_registry``.
"""

from .base import NodeExecutionError, NodeResult, ExecutorRegistry, executor_registry
from . import appointments, leads, catalog  # noqa: F401

__all__ = [
    "NodeExecutionError",
    "NodeResult",
    "ExecutorRegistry",
    "executor_registry",
]
