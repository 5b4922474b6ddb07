import logging
import socket
from typing import Any, Dict, Iterable

from ..config import MemcachedSettings
from ..errors import HarvestConnectionError, QueryError
from .base import GraphDefinition, MetricPlugin, MetricSeries

logger = logging.getLogger("harvest.plugins.memcached")


def _to_number(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        return float(value)


def parse_stats(lines: Iterable[str]) -> Dict[str, Any]:
    """Parse a ``stats`` response up to its ``END`` line."""
    stat: Dict[str, Any] = {}
    for line in lines:
        line = line.rstrip("\r\n")
        if line == "END":
            if "total_items" in stat:
                stat["new_items"] = stat["total_items"]
            return stat

        fields = line.split(" ")
        if fields[0] != "STAT" or len(fields) < 3:
            continue
        try:
            stat[fields[1]] = _to_number(fields[2])
        except ValueError:
            # version, libevent and friends are not numeric
            logger.debug("Skipping non-numeric stat %s=%s", fields[1], fields[2])
    raise QueryError("stats response ended before END")


class MemcachedPlugin(MetricPlugin):
    name = "memcached"
    default_prefix = "memcached"

    def __init__(self, settings: MemcachedSettings) -> None:
        super().__init__(settings.metric_key_prefix)
        self.settings = settings

    def _connect(self) -> socket.socket:
        if self.settings.socket:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(self.settings.timeout)
            try:
                sock.connect(self.settings.socket)
            except OSError:
                sock.close()
                raise
            return sock
        return socket.create_connection(
            (self.settings.host, self.settings.port), timeout=self.settings.timeout
        )

    def fetch_metrics(self) -> Dict[str, Any]:
        try:
            sock = self._connect()
        except OSError as exc:
            logger.error("FetchMetrics: %s", exc)
            raise HarvestConnectionError(str(exc)) from exc

        with sock:
            try:
                sock.sendall(b"stats\r\n")
                with sock.makefile(
                    "r", encoding="utf-8", errors="replace", newline=""
                ) as stream:
                    return parse_stats(stream)
            except OSError as exc:
                logger.error("Failed to read stats. %s", exc)
                raise QueryError(f"failed to read stats: {exc}") from exc

    def build_graphs(self, label_prefix: str) -> Dict[str, GraphDefinition]:
        # https://github.com/memcached/memcached/blob/master/doc/protocol.txt
        return {
            "connections": GraphDefinition(
                label=f"{label_prefix} Connections",
                unit="integer",
                metrics=(MetricSeries("curr_connections", "Connections"),),
            ),
            "cmd": GraphDefinition(
                label=f"{label_prefix} Command",
                unit="integer",
                metrics=tuple(
                    MetricSeries(f"cmd_{name}", name.title(), diff=True, type="uint64")
                    for name in ("get", "set", "flush", "touch")
                ),
            ),
            "hitmiss": GraphDefinition(
                label=f"{label_prefix} Hits/Misses",
                unit="integer",
                metrics=tuple(
                    MetricSeries(
                        f"{command}_{outcome}",
                        f"{command.title()} {outcome.title()}",
                        diff=True,
                        type="uint64",
                    )
                    for command in ("get", "delete", "incr", "cas", "touch")
                    for outcome in ("hits", "misses")
                ),
            ),
            "evictions": GraphDefinition(
                label=f"{label_prefix} Evictions",
                unit="integer",
                metrics=(MetricSeries("evictions", "Evictions", diff=True, type="uint64"),),
            ),
            "unfetched": GraphDefinition(
                label=f"{label_prefix} Unfetched",
                unit="integer",
                metrics=(
                    MetricSeries(
                        "expired_unfetched", "Expired unfetched", diff=True, type="uint64"
                    ),
                    MetricSeries(
                        "evicted_unfetched", "Evicted unfetched", diff=True, type="uint64"
                    ),
                ),
            ),
            "rusage": GraphDefinition(
                label=f"{label_prefix} Resource Usage",
                unit="float",
                metrics=(
                    MetricSeries("rusage_user", "User", diff=True),
                    MetricSeries("rusage_system", "System", diff=True),
                ),
            ),
            "bytes": GraphDefinition(
                label=f"{label_prefix} Traffics",
                unit="bytes",
                metrics=(
                    MetricSeries("bytes_read", "Read", diff=True, type="uint64"),
                    MetricSeries("bytes_written", "Write", diff=True, type="uint64"),
                ),
            ),
            "cachesize": GraphDefinition(
                label=f"{label_prefix} Cache Size",
                unit="bytes",
                metrics=(
                    MetricSeries("limit_maxbytes", "Total"),
                    MetricSeries("bytes", "Used", type="uint64"),
                ),
            ),
            "items": GraphDefinition(
                label=f"{label_prefix} Items",
                unit="integer",
                metrics=(
                    MetricSeries("curr_items", "Current Items", type="uint64"),
                    MetricSeries("new_items", "New Items", diff=True, type="uint64"),
                ),
            ),
        }
