import logging
import re
import subprocess
from typing import Dict

from ..config import VarnishSettings
from ..errors import QueryError
from .base import GraphDefinition, MetricPlugin, MetricSeries

logger = logging.getLogger("harvest.plugins.varnish")

LINE_RE = re.compile(r"^([^ ]+) +(\d+)", re.ASCII)

# varnishstat 4.0 added the MAIN. section prefix
COUNTER_KEYS = {
    "client_req": "requests",
    "MAIN.client_req": "requests",
    "cache_hit": "cache_hits",
    "MAIN.cache_hit": "cache_hits",
}


def parse_varnishstat(output: str) -> Dict[str, float]:
    stat: Dict[str, float] = {}
    for line in output.splitlines():
        match = LINE_RE.match(line)
        if match is None:
            continue
        key = COUNTER_KEYS.get(match.group(1))
        if key is not None:
            stat[key] = float(match.group(2))
    return stat


class VarnishPlugin(MetricPlugin):
    name = "varnish"
    default_prefix = "varnish"

    def __init__(self, settings: VarnishSettings) -> None:
        super().__init__(settings.metric_key_prefix)
        self.settings = settings

    def fetch_metrics(self) -> Dict[str, float]:
        try:
            completed = subprocess.run(
                [self.settings.varnishstat_path, "-1"],
                capture_output=True,
                check=True,
                text=True,
                errors="replace",
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            logger.error("Failed to run varnishstat. %s", exc)
            raise QueryError(f"failed to run varnishstat: {exc}") from exc
        return parse_varnishstat(completed.stdout)

    def build_graphs(self, label_prefix: str) -> Dict[str, GraphDefinition]:
        return {
            "requests": GraphDefinition(
                label=f"{label_prefix} Client Requests",
                unit="integer",
                metrics=(
                    MetricSeries("requests", "Requests", diff=True),
                    MetricSeries("cache_hits", "Hits", diff=True),
                ),
            ),
        }
