"""
Federation - Transport.

============================================================
RESPONSIBILITY
============================================================
Carries sync records between clusters.

- InMemoryTransport: clusters in one process, with injectable
  latency and network partitions
- HttpPeerTransport: aiohttp client talking to a peer's
  federation endpoints
- create_federation_app: aiohttp server side of the same
  endpoints

Wire format (JSON):

    POST /federation/push  {"origin": id, "records": [...]}
                        -> {"status": "ok", "ack": {name: [clock, origin]}}
    POST /federation/pull  {"origin": id, "since": {name: [clock, origin]}}
                        -> {"status": "ok", "records": [...]}
    GET  /federation/vector
                        -> {"status": "ok", "cluster_id": id, "vector": {...}}

============================================================
"""

import asyncio
import json
import logging
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set

import aiohttp
from aiohttp import web

from core.exceptions import FederationTimeout, InvalidDescriptorError, PeerUnreachable

from .models import (
    SyncRecord,
    VersionKey,
    records_from_wire,
    records_to_wire,
    vector_from_wire,
    vector_to_wire,
)
from .sync import FederationSync, PeerTransport


logger = logging.getLogger(__name__)


# ============================================================
# IN-MEMORY TRANSPORT
# ============================================================

class InMemoryTransport(PeerTransport):
    """
    Transport between FederationSync instances in one process.

    Records are serialized on the way through so each side works
    on its own copies.
    """

    def __init__(self):
        self._clusters: Dict[str, FederationSync] = {}
        self._unreachable: Set[str] = set()
        self._partitions: Set[FrozenSet[str]] = set()
        self._latency: Dict[str, float] = {}
        self.calls: List[Dict[str, Any]] = []

    def connect(self, sync: FederationSync) -> None:
        """Make a cluster reachable through this transport."""
        self._clusters[sync.cluster_id] = sync

    def set_reachable(self, cluster_id: str, reachable: bool) -> None:
        """Take a cluster off the network (or bring it back)."""
        if reachable:
            self._unreachable.discard(cluster_id)
        else:
            self._unreachable.add(cluster_id)

    def partition(self, a: str, b: str) -> None:
        """Cut the link between two clusters."""
        self._partitions.add(frozenset((a, b)))

    def heal(self, a: Optional[str] = None, b: Optional[str] = None) -> None:
        """Restore one link, or every link when called without arguments."""
        if a is None or b is None:
            self._partitions.clear()
        else:
            self._partitions.discard(frozenset((a, b)))

    def set_latency(self, cluster_id: str, seconds: float) -> None:
        self._latency[cluster_id] = seconds

    async def _route(self, peer_id: str, origin: str, op: str) -> FederationSync:
        self.calls.append({"op": op, "origin": origin, "peer": peer_id})
        target = self._clusters.get(peer_id)
        if target is None:
            raise PeerUnreachable(peer_id, reason="not connected")
        if peer_id in self._unreachable or origin in self._unreachable:
            raise PeerUnreachable(peer_id, reason="host down")
        if frozenset((origin, peer_id)) in self._partitions:
            raise PeerUnreachable(peer_id, reason="network partition")
        latency = self._latency.get(peer_id, 0.0)
        if latency:
            await asyncio.sleep(latency)
        return target

    async def push(self, peer_id: str, origin: str, records: List[SyncRecord]) -> Dict[str, VersionKey]:
        target = await self._route(peer_id, origin, "push")
        return await target.handle_push(origin, records_from_wire(records_to_wire(records)))

    async def pull(self, peer_id: str, origin: str, since_vector: Mapping[str, VersionKey]) -> List[SyncRecord]:
        target = await self._route(peer_id, origin, "pull")
        return records_from_wire(records_to_wire(target.serve_pull(dict(since_vector))))


# ============================================================
# HTTP TRANSPORT
# ============================================================

class HttpPeerTransport(PeerTransport):
    """aiohttp client for peer federation endpoints."""

    def __init__(
        self,
        endpoints: Optional[Mapping[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 5.0,
    ):
        self._endpoints: Dict[str, str] = {
            peer: url.rstrip("/") for peer, url in (endpoints or {}).items()
        }
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout

    def set_endpoint(self, peer_id: str, url: str) -> None:
        self._endpoints[peer_id] = url.rstrip("/")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
            self._owns_session = True
        return self._session

    async def _post(self, peer_id: str, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        base = self._endpoints.get(peer_id)
        if base is None:
            raise PeerUnreachable(peer_id, reason="no endpoint configured")
        session = await self._get_session()
        url = f"{base}{path}"
        try:
            async with session.post(url, json=body) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise PeerUnreachable(peer_id, reason=f"HTTP {resp.status}: {text[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise PeerUnreachable(peer_id, reason=str(e) or type(e).__name__, cause=e) from e
        except asyncio.TimeoutError:
            raise FederationTimeout(peer_id, self._timeout) from None

        if data.get("status") != "ok":
            raise PeerUnreachable(peer_id, reason=f"peer error: {data.get('error')}")
        return data

    async def push(self, peer_id: str, origin: str, records: List[SyncRecord]) -> Dict[str, VersionKey]:
        data = await self._post(peer_id, "/federation/push", {
            "origin": origin,
            "records": records_to_wire(records),
        })
        try:
            return vector_from_wire(data.get("ack") or {})
        except (AttributeError, TypeError, ValueError) as e:
            raise PeerUnreachable(peer_id, reason=f"malformed ack: {e}") from e

    async def pull(self, peer_id: str, origin: str, since_vector: Mapping[str, VersionKey]) -> List[SyncRecord]:
        data = await self._post(peer_id, "/federation/pull", {
            "origin": origin,
            "since": vector_to_wire(since_vector),
        })
        try:
            return records_from_wire(data.get("records", []))
        except (KeyError, TypeError, ValueError, InvalidDescriptorError) as e:
            raise PeerUnreachable(peer_id, reason=f"malformed records: {e}") from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


# ============================================================
# SERVER SIDE
# ============================================================

def _json(data: Any, status: int = 200) -> web.Response:
    return web.Response(
        text=json.dumps(data),
        status=status,
        content_type="application/json",
    )


class FederationAPI:
    """Federation endpoints served to peers."""

    def __init__(self, sync: FederationSync):
        self._sync = sync

    async def _body(self, request: web.Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise web.HTTPBadRequest(
                text=json.dumps({"status": "error", "error": f"invalid JSON: {e}"}),
                content_type="application/json",
            )
        if not isinstance(body, dict) or not isinstance(body.get("origin"), str):
            raise web.HTTPBadRequest(
                text=json.dumps({"status": "error", "error": "missing origin"}),
                content_type="application/json",
            )
        return body

    async def push(self, request: web.Request) -> web.Response:
        """
        POST /federation/push

        Apply records pushed by a peer.
        """
        body = await self._body(request)
        try:
            records = records_from_wire(body.get("records", []))
        except (KeyError, TypeError, ValueError, InvalidDescriptorError) as e:
            return _json({"status": "error", "error": f"malformed records: {e}"}, status=400)
        try:
            ack = await self._sync.handle_push(body["origin"], records)
            return _json({"status": "ok", "ack": vector_to_wire(ack)})
        except Exception as e:
            logger.error(f"Error handling push from {body['origin']}: {e}")
            return _json({"status": "error", "error": str(e)}, status=500)

    async def pull(self, request: web.Request) -> web.Response:
        """
        POST /federation/pull

        Return local records newer than the caller's vector.
        """
        body = await self._body(request)
        try:
            since = vector_from_wire(body.get("since") or {})
        except (AttributeError, TypeError, ValueError) as e:
            return _json({"status": "error", "error": f"invalid vector: {e}"}, status=400)
        try:
            records = self._sync.serve_pull(since)
            return _json({"status": "ok", "records": records_to_wire(records)})
        except Exception as e:
            logger.error(f"Error serving pull for {body['origin']}: {e}")
            return _json({"status": "error", "error": str(e)}, status=500)

    async def vector(self, request: web.Request) -> web.Response:
        """GET /federation/vector"""
        return _json({
            "status": "ok",
            "cluster_id": self._sync.cluster_id,
            "vector": vector_to_wire(self._sync.local_vector()),
        })


def setup_federation_routes(app: web.Application, sync: FederationSync) -> None:
    """Add federation routes to an existing application."""
    api = FederationAPI(sync)
    app.router.add_post("/federation/push", api.push)
    app.router.add_post("/federation/pull", api.pull)
    app.router.add_get("/federation/vector", api.vector)


def create_federation_app(sync: FederationSync) -> web.Application:
    """aiohttp Application serving the federation endpoints."""
    app = web.Application()
    setup_federation_routes(app, sync)
    return app


__all__ = [
    "InMemoryTransport",
    "HttpPeerTransport",
    "FederationAPI",
    "setup_federation_routes",
    "create_federation_app",
]
