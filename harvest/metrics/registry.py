from dataclasses import asdict
from typing import Any, Dict, Iterable, Iterator

from .base import MetricPlugin, MetricResult


class PluginRegistry:
    """Plugins by name, in registration order.

    Metric keys are namespaced by prefix on the agent side, so two plugins may
    not share one.
    """

    def __init__(self, plugins: Iterable[MetricPlugin] = ()) -> None:
        self._plugins: Dict[str, MetricPlugin] = {}
        for plugin in plugins:
            self.register(plugin)

    def register(self, plugin: MetricPlugin) -> None:
        prefix = plugin.metric_key_prefix()
        for existing in self._plugins.values():
            if existing.name == plugin.name:
                raise ValueError(f"Plugin '{plugin.name}' is already registered.")
            if existing.metric_key_prefix() == prefix:
                raise ValueError(
                    f"Metric key prefix '{prefix}' is already used by '{existing.name}'."
                )
        self._plugins[plugin.name] = plugin

    def __iter__(self) -> Iterator[MetricPlugin]:
        return iter(self._plugins.values())

    def get(self, name: str) -> MetricPlugin:
        try:
            return self._plugins[name]
        except KeyError:
            raise KeyError(f"Plugin '{name}' is not registered.") from None

    def describe(self, name: str) -> Dict[str, Any]:
        plugin = self.get(name)
        return {
            "name": plugin.name,
            "prefix": plugin.metric_key_prefix(),
            "graphs": {
                key: asdict(graph) for key, graph in plugin.graph_definition().items()
            },
        }

    def collect_one(self, name: str) -> MetricResult:
        plugin = self.get(name)
        return MetricResult(plugin.name, plugin.metric_key_prefix(), plugin.fetch_metrics())
