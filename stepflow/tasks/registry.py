"""
Executor Registry — Central registry for all available step executors.

Maintains a mapping of node type tags to their implementations. Built-in
control executors and plugin executors share this one lookup path.
"""

from typing import Dict, Optional, Type

import structlog

from stepflow.config import get_settings
from stepflow.tasks.base_task import BaseTask
from stepflow.tasks.implementations.control_tasks import CONTROL_TASK_TYPES
from stepflow.tasks.implementations.data_tasks import DATA_TASK_TYPES
from stepflow.tasks.implementations.flow_tasks import FLOW_TASK_TYPES
from stepflow.tasks.plugins import get_plugin_manager

logger = structlog.get_logger(__name__)


class TaskRegistry:
    """Central registry for all step executor implementations."""

    def __init__(self, load_plugins: bool = False):
        self._tasks: Dict[str, Type[BaseTask]] = {}
        self._register_builtin_tasks()
        if load_plugins:
            self.load_plugins()

    def _register_builtin_tasks(self):
        """Register all built-in executors."""
        # Entry, terminal, no-op action
        for task_type, task_class in CONTROL_TASK_TYPES.items():
            self.register(task_type, task_class)

        # Variables, values, logging, waits
        for task_type, task_class in DATA_TASK_TYPES.items():
            self.register(task_type, task_class)

        # Switch, loop, verify, expressions
        for task_type, task_class in FLOW_TASK_TYPES.items():
            self.register(task_type, task_class)

    def load_plugins(self) -> int:
        """Register executors exposed through installed entry points.

        Returns:
            Number of plugin executors registered
        """
        manager = get_plugin_manager()
        manager.discover_and_load()
        task_types = manager.get_task_types()
        for task_type, task_class in task_types.items():
            self.register(task_type, task_class)
        return len(task_types)

    def register(self, task_type: str, task_class: Type[BaseTask]):
        """Register a new executor type. Later registrations replace earlier ones."""
        if task_type in self._tasks and self._tasks[task_type] is not task_class:
            logger.info("Replacing executor", task_type=task_type, executor=task_class.__name__)
        self._tasks[task_type] = task_class

    def unregister(self, task_type: str) -> None:
        self._tasks.pop(task_type, None)

    def get(self, task_type: str) -> Optional[Type[BaseTask]]:
        """Get an executor class by type tag."""
        return self._tasks.get(task_type)

    def create_instance(self, task_type: str) -> Optional[BaseTask]:
        """Create a new executor instance by type tag."""
        task_class = self.get(task_type)
        if task_class:
            return task_class()
        return None

    def list_all(self) -> list:
        """List all registered executors with metadata."""
        return [
            {
                "task_type": task_type,
                "display_name": cls.display_name,
                "description": cls.description,
                "config_schema": cls.get_config_schema(),
            }
            for task_type, cls in self._tasks.items()
        ]

    @property
    def available_types(self) -> list:
        return list(self._tasks.keys())


# Singleton
_registry: Optional[TaskRegistry] = None


def get_task_registry() -> TaskRegistry:
    """Get or create the singleton executor registry."""
    global _registry
    if _registry is None:
        _registry = TaskRegistry(load_plugins=get_settings().PLUGINS_ENABLED)
    return _registry
