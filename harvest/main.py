from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import RedirectResponse

from .config import (
    MemcachedSettings,
    PostgresSettings,
    VarnishSettings,
    settings,
)
from .errors import HarvestError
from .metrics.base import MetricPlugin
from .metrics.memcached import MemcachedPlugin
from .metrics.postgres import PostgresPlugin
from .metrics.registry import PluginRegistry
from .metrics.varnish import VarnishPlugin

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("harvest")

PLUGIN_FACTORIES: Dict[str, Callable[[], MetricPlugin]] = {
    "postgres": lambda: PostgresPlugin(PostgresSettings()),
    "memcached": lambda: MemcachedPlugin(MemcachedSettings()),
    "varnish": lambda: VarnishPlugin(VarnishSettings()),
}


def build_registry(names: List[str]) -> PluginRegistry:
    unknown = [name for name in names if name not in PLUGIN_FACTORIES]
    if unknown:
        raise ValueError(f"Unknown plugin '{unknown[0]}'.")
    return PluginRegistry(PLUGIN_FACTORIES[name]() for name in names)


registry = build_registry(settings.enabled_plugins)

app = FastAPI(title=settings.app_name)


def get_registry() -> PluginRegistry:
    return registry


def _describe(registry: PluginRegistry, name: str) -> Dict[str, Any]:
    try:
        return registry.describe(name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/", include_in_schema=False)
async def root_redirect() -> RedirectResponse:
    return RedirectResponse("/api/plugins")


@app.get("/api/plugins")
def read_plugins(registry: PluginRegistry = Depends(get_registry)):
    return [registry.describe(plugin.name) for plugin in registry]


@app.get("/api/plugins/{name}")
def read_plugin(name: str, registry: PluginRegistry = Depends(get_registry)):
    return _describe(registry, name)


@app.get("/api/plugins/{name}/graphs")
def read_graphs(name: str, registry: PluginRegistry = Depends(get_registry)):
    return _describe(registry, name)["graphs"]


@app.get("/api/plugins/{name}/metrics")
def read_metrics(name: str, registry: PluginRegistry = Depends(get_registry)):
    try:
        result = registry.collect_one(name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HarvestError as exc:
        logger.error("Fetch for plugin %s failed: %s", name, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return asdict(result)
