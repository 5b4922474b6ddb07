from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Tuple


@dataclass(frozen=True)
class MetricSeries:
    """One series of a graph, keyed by its metric name."""

    name: str
    label: str
    diff: bool = False  # the agent reports a rate instead of the raw value
    stacked: bool = False
    type: str = "float64"


@dataclass(frozen=True)
class GraphDefinition:
    """Declarative shape of one graph as shown by the monitoring agent."""

    label: str
    unit: str
    metrics: Tuple[MetricSeries, ...] = ()


class MetricPlugin(ABC):
    """Abstract base class for metric plugins."""

    name: str
    default_prefix: str

    def __init__(self, prefix: str = "") -> None:
        self._prefix = prefix or self.default_prefix
        self._graphs = self.build_graphs(self._prefix.title())

    def metric_key_prefix(self) -> str:
        return self._prefix

    def graph_definition(self) -> Dict[str, GraphDefinition]:
        return dict(self._graphs)

    @abstractmethod
    def build_graphs(self, label_prefix: str) -> Dict[str, GraphDefinition]:
        """Return the static graph declaration for this plugin."""

    @abstractmethod
    def fetch_metrics(self) -> Dict[str, Any]:
        """Run one fetch cycle and return raw absolute values."""


@dataclass
class MetricResult:
    plugin: str
    prefix: str
    values: Dict[str, Any]


def merge_stats(*sources: Mapping[str, Any]) -> Dict[str, Any]:
    """Fold ``sources`` left to right into a new dict; later sources win."""
    merged: Dict[str, Any] = {}
    for source in sources:
        merged.update(source)
    return merged
