"""Plugin loading for third-party step executors.

Executors ship in installed packages and register through entry points:

    # pyproject.toml of the plugin package
    [project.entry-points."stepflow.executors"]
    "http.request" = "my_package.executors:HttpRequestTask"

The entry point name is the node type tag; the object must be a BaseTask
subclass. Loaded executors are registered in the same TaskRegistry as the
built-in ones.
"""

import importlib.metadata
from typing import Any, Optional

import structlog

from stepflow.tasks.base_task import BaseTask

logger = structlog.get_logger(__name__)


class PluginInfo:
    """Metadata for a loaded plugin."""

    def __init__(
        self,
        name: str,
        version: str = "0.0.0",
        source: str = "entrypoint",
        task_types: Optional[dict] = None,
        errors: Optional[list[str]] = None,
    ):
        self.name = name
        self.version = version
        self.source = source
        self.task_types = task_types or {}
        self.enabled = True
        self.errors: list[str] = errors or []


class PluginManager:
    """Discovers executor plugins and tracks their status."""

    ENTRY_POINT_GROUP = "stepflow.executors"

    def __init__(self):
        self.plugins: dict[str, PluginInfo] = {}
        self._task_types: dict[str, Any] = {}

    def discover_and_load(self) -> dict[str, PluginInfo]:
        """Load every executor registered under the entry point group."""
        for ep in importlib.metadata.entry_points(group=self.ENTRY_POINT_GROUP):
            plugin_name = f"ep:{ep.name}"
            if plugin_name in self.plugins:
                continue
            try:
                task_class = ep.load()
                if not (isinstance(task_class, type) and issubclass(task_class, BaseTask)):
                    raise TypeError(f"{ep.value} is not a BaseTask subclass")
            except Exception as e:
                logger.warning("Failed to load executor plugin", entry_point=ep.name, error=str(e))
                self.plugins[plugin_name] = PluginInfo(name=ep.name, errors=[str(e)])
                continue

            info = PluginInfo(name=ep.name, task_types={ep.name: task_class})
            if ep.dist:
                info.version = ep.dist.version
            self.plugins[plugin_name] = info
            self._task_types[ep.name] = task_class
            logger.info("Loaded executor plugin", entry_point=ep.name, version=info.version)

        logger.debug(
            "Plugin discovery complete",
            plugins=len(self.plugins),
            task_types=len(self._task_types),
        )
        return self.plugins

    def get_task_types(self) -> dict[str, Any]:
        """Executor classes from enabled plugins."""
        return dict(self._task_types)

    def get_plugin(self, name: str) -> Optional[PluginInfo]:
        return self.plugins.get(name)

    def list_plugins(self) -> list[dict]:
        """List all discovered plugins with status."""
        return [
            {
                "name": info.name,
                "version": info.version,
                "source": info.source,
                "enabled": info.enabled,
                "task_types": list(info.task_types.keys()),
                "errors": info.errors,
            }
            for info in self.plugins.values()
        ]

    def enable_plugin(self, name: str) -> bool:
        plugin = self.plugins.get(name)
        if plugin:
            plugin.enabled = True
            self._task_types.update(plugin.task_types)
            return True
        return False

    def disable_plugin(self, name: str) -> bool:
        """Disable a plugin (its executors stop being offered to registries)."""
        plugin = self.plugins.get(name)
        if plugin:
            plugin.enabled = False
            for task_name in plugin.task_types:
                self._task_types.pop(task_name, None)
            return True
        return False


# Singleton
_plugin_manager: Optional[PluginManager] = None


def get_plugin_manager() -> PluginManager:
    global _plugin_manager
    if _plugin_manager is None:
        _plugin_manager = PluginManager()
    return _plugin_manager
