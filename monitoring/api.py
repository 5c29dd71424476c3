"""
Monitoring API Endpoints.

============================================================
PURPOSE
============================================================
HTTP API for inspecting a running engine.

PRINCIPLES:
- ALL endpoints are READ-ONLY
- NO registration or scaling endpoints
- NO state mutation
- Pure data retrieval

============================================================
"""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.constants import SYSTEM_NAME, SYSTEM_VERSION
from core.exceptions import ModuleNotFound, UnknownEventType
from eventbus.bus import EventBus
from eventbus.models import EventFilter, EventType
from orchestrator.models import DiscoveryFilter, ModuleState
from orchestrator.registry import ModuleRegistry
from service_mesh.builder import ServiceMeshBuilder

from .autoscaler import AutoScaler
from .metrics import MetricsCollector


logger = logging.getLogger(__name__)

DEFAULT_EVENT_LIMIT = 100


# ============================================================
# JSON ENCODER
# ============================================================

class MonitoringEncoder(json.JSONEncoder):
    """JSON encoder for engine data."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(
        text=json.dumps(data, cls=MonitoringEncoder, indent=2),
        status=status,
        content_type="application/json",
    )


def error_response(message: str, status: int) -> web.Response:
    return json_response({"status": "error", "error": message}, status=status)


# ============================================================
# API HANDLERS
# ============================================================

class MonitoringAPI:
    """
    HTTP API over the registry, mesh, event history and metrics.

    ALL endpoints are READ-ONLY.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        bus: EventBus,
        mesh: Optional[ServiceMeshBuilder] = None,
        federation=None,
        autoscaler: Optional[AutoScaler] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._registry = registry
        self._bus = bus
        self._mesh = mesh
        self._federation = federation
        self._autoscaler = autoscaler
        self._metrics = metrics or bus.metrics

    # --------------------------------------------------------
    # HEALTH
    # --------------------------------------------------------

    async def health(self, request: web.Request) -> web.Response:
        """
        GET /health

        Aggregate health reflecting the latest fold.
        """
        try:
            return json_response({
                "status": "ok",
                "service": SYSTEM_NAME,
                "version": SYSTEM_VERSION,
                "cluster_id": self._registry.cluster_id,
                "timestamp": self._registry.clock.now(),
                "data": self._registry.get_health(),
            })
        except Exception as e:
            logger.error(f"Error getting health: {e}")
            return error_response(str(e), 500)

    # --------------------------------------------------------
    # MODULE ENDPOINTS
    # --------------------------------------------------------

    async def get_modules(self, request: web.Request) -> web.Response:
        """
        GET /modules?capability=&interface=&state=

        Discover modules.
        """
        try:
            state = request.query.get("state")
            discovery = DiscoveryFilter(
                capability=request.query.get("capability"),
                interface=request.query.get("interface"),
                state=ModuleState(state) if state else None,
            )
        except ValueError as e:
            return error_response(f"Invalid filter: {e}", 400)

        try:
            records = self._registry.discover(discovery)
            return json_response({
                "status": "ok",
                "count": len(records),
                "data": [r.to_dict() for r in records],
            })
        except Exception as e:
            logger.error(f"Error discovering modules: {e}")
            return error_response(str(e), 500)

    async def get_module(self, request: web.Request) -> web.Response:
        """
        GET /modules/{name}
        """
        name = request.match_info["name"]
        try:
            record = self._registry.get(name)
            data = record.to_dict()
            if self._mesh is not None:
                snapshot = self._mesh.snapshot
                data["mesh"] = {
                    "outgoing": [e.to_dict() for e in snapshot.edges_from(name)],
                    "incoming": [e.to_dict() for e in snapshot.edges_to(name)],
                }
            return json_response({"status": "ok", "data": data})
        except ModuleNotFound as e:
            return error_response(e.message, 404)
        except Exception as e:
            logger.error(f"Error getting module {name}: {e}")
            return error_response(str(e), 500)

    async def get_module_metrics(self, request: web.Request) -> web.Response:
        """
        GET /modules/{name}/metrics

        Recent metric samples of a module.
        """
        name = request.match_info["name"]
        try:
            record = self._registry.get(name)
            return json_response({
                "status": "ok",
                "data": record.to_dict(include_metrics=True)["metrics"],
            })
        except ModuleNotFound as e:
            return error_response(e.message, 404)
        except Exception as e:
            logger.error(f"Error getting metrics of {name}: {e}")
            return error_response(str(e), 500)

    async def get_order(self, request: web.Request) -> web.Response:
        """
        GET /order

        Initialization and shutdown order of live modules.
        """
        try:
            order = self._registry.resolve_order()
            return json_response({
                "status": "ok",
                "data": {"startup": order, "shutdown": list(reversed(order))},
            })
        except Exception as e:
            logger.error(f"Error resolving order: {e}")
            return error_response(str(e), 500)

    # --------------------------------------------------------
    # MESH / EVENTS
    # --------------------------------------------------------

    async def get_mesh(self, request: web.Request) -> web.Response:
        """
        GET /mesh
        """
        if self._mesh is None:
            return error_response("Service mesh not configured", 404)
        try:
            return json_response({"status": "ok", "data": self._mesh.snapshot.to_dict()})
        except Exception as e:
            logger.error(f"Error getting mesh: {e}")
            return error_response(str(e), 500)

    async def get_events(self, request: web.Request) -> web.Response:
        """
        GET /events?pattern=&source=&limit=

        Recent events from the bus history, oldest first.
        """
        pattern = request.query.get("pattern")
        try:
            limit = int(request.query.get("limit", DEFAULT_EVENT_LIMIT))
            if pattern and "*" not in pattern and "?" not in pattern:
                EventType.parse(pattern)
        except ValueError:
            return error_response("limit must be an integer", 400)
        except UnknownEventType as e:
            return error_response(e.message, 400)

        try:
            events = self._bus.get_event_history(EventFilter(
                pattern=pattern,
                source=request.query.get("source"),
                limit=limit,
            ))
            return json_response({
                "status": "ok",
                "count": len(events),
                "data": [e.to_dict() for e in events],
            })
        except Exception as e:
            logger.error(f"Error getting events: {e}")
            return error_response(str(e), 500)

    async def get_subscriptions(self, request: web.Request) -> web.Response:
        """
        GET /subscriptions

        Per-subscriber delivery counters.
        """
        try:
            return json_response({"status": "ok", "data": self._bus.stats()})
        except Exception as e:
            logger.error(f"Error getting subscriptions: {e}")
            return error_response(str(e), 500)

    # --------------------------------------------------------
    # SCALING / FEDERATION
    # --------------------------------------------------------

    async def get_scaling(self, request: web.Request) -> web.Response:
        """
        GET /scaling
        """
        if self._autoscaler is None:
            return json_response({"status": "ok", "data": {}})
        try:
            data = {}
            for name, policy in sorted(self._autoscaler.policies().items()):
                state = self._autoscaler.state(name)
                data[name] = {
                    "policy": policy.to_dict(),
                    "state": state.to_dict() if state else None,
                }
            return json_response({"status": "ok", "data": data})
        except Exception as e:
            logger.error(f"Error getting scaling state: {e}")
            return error_response(str(e), 500)

    async def get_peers(self, request: web.Request) -> web.Response:
        """
        GET /federation/peers
        """
        if self._federation is None:
            return json_response({"status": "ok", "enabled": False, "data": []})
        try:
            return json_response({
                "status": "ok",
                "enabled": True,
                "cluster_id": self._federation.cluster_id,
                "data": [p.to_dict() for p in self._federation.peers()],
            })
        except Exception as e:
            logger.error(f"Error getting peers: {e}")
            return error_response(str(e), 500)

    # --------------------------------------------------------
    # METRICS
    # --------------------------------------------------------

    async def get_metrics(self, request: web.Request) -> web.Response:
        """
        GET /metrics

        Prometheus text exposition. ?format=json for a JSON snapshot.
        """
        try:
            if request.query.get("format") == "json":
                return json_response({"status": "ok", "data": self._metrics.snapshot()})
            return web.Response(
                body=generate_latest(self._metrics.registry),
                headers={"Content-Type": CONTENT_TYPE_LATEST},
            )
        except Exception as e:
            logger.error(f"Error exporting metrics: {e}")
            return error_response(str(e), 500)


# ============================================================
# ROUTER FACTORY
# ============================================================

def setup_monitoring_routes(app: web.Application, api: MonitoringAPI) -> None:
    """Add monitoring routes to an existing application."""
    app.router.add_get("/health", api.health)
    app.router.add_get("/modules", api.get_modules)
    app.router.add_get("/modules/{name}", api.get_module)
    app.router.add_get("/modules/{name}/metrics", api.get_module_metrics)
    app.router.add_get("/order", api.get_order)
    app.router.add_get("/mesh", api.get_mesh)
    app.router.add_get("/events", api.get_events)
    app.router.add_get("/subscriptions", api.get_subscriptions)
    app.router.add_get("/scaling", api.get_scaling)
    app.router.add_get("/federation/peers", api.get_peers)
    app.router.add_get("/metrics", api.get_metrics)


def create_monitoring_app(
    registry: ModuleRegistry,
    bus: EventBus,
    mesh: Optional[ServiceMeshBuilder] = None,
    federation=None,
    autoscaler: Optional[AutoScaler] = None,
    metrics: Optional[MetricsCollector] = None,
) -> web.Application:
    """
    Create monitoring API application.

    Returns an aiohttp Application with all routes configured.
    """
    api = MonitoringAPI(registry, bus, mesh, federation, autoscaler, metrics)
    app = web.Application()
    setup_monitoring_routes(app, api)
    return app


__all__ = [
    "MonitoringEncoder",
    "json_response",
    "MonitoringAPI",
    "setup_monitoring_routes",
    "create_monitoring_app",
]
