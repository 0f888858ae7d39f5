"""Marionette agentless configuration management."""

from .inventory import InventoryLoader, VariableResolver
from .playbook import PlaybookLoader, RoleLoader
from .graph import TaskGraphBuilder
from .report import RunReport
from .runner import Orchestrator

__all__ = [
    "InventoryLoader",
    "VariableResolver",
    "PlaybookLoader",
    "RoleLoader",
    "TaskGraphBuilder",
    "RunReport",
    "Orchestrator",
]
