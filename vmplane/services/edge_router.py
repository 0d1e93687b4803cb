import logging
import os
from typing import Callable, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from vmplane.core.exceptions import EdgeConflict, EdgeUnavailable
from vmplane.models.route_binding import RouteBinding

logger = logging.getLogger(__name__)

SOCKET_SUFFIX = ".sock"

def route_name(service_name: str) -> str:
    return f"{service_name}-route"

class EdgeRouterController:
    """
    Registers VMs as upstreams of the reverse proxy running on the VM's host.

    Each host runs its own proxy; its admin API listens on
    `<socket_dir>/<host>.sock` and follows the Kong admin API: one service
    per VM (the upstream) with one host-based route.
    """

    def __init__(self, socket_dir: str, base_domain: str, upstream_port: int = 80, timeout: float = 5,
                 transport_factory: Optional[Callable[[str], httpx.AsyncBaseTransport]] = None,
                 attempts: int = 3, min_wait: float = 0.1, max_wait: float = 0.8):
        self.socket_dir = socket_dir
        self.base_domain = base_domain
        self.upstream_port = upstream_port
        self.timeout = timeout
        self.transport_factory = transport_factory or self._uds_transport
        self.attempts = attempts
        self.min_wait = min_wait
        self.max_wait = max_wait

    def socket_path(self, edge_host: str) -> str:
        return os.path.join(self.socket_dir, f"{edge_host}{SOCKET_SUFFIX}")

    def _uds_transport(self, edge_host: str) -> httpx.AsyncBaseTransport:
        return httpx.AsyncHTTPTransport(uds=self.socket_path(edge_host))

    def _client(self, edge_host: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport_factory(edge_host),
            base_url="http://edge",
            timeout=self.timeout,
        )

    def route_host(self, hostname: str) -> str:
        return f"{hostname}.{self.base_domain}"

    def available_hosts(self) -> List[str]:
        """Hosts that expose an edge proxy socket."""
        if not os.path.isdir(self.socket_dir):
            return []
        return sorted(
            name[:-len(SOCKET_SUFFIX)] for name in os.listdir(self.socket_dir) if name.endswith(SOCKET_SUFFIX)
        )

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise EdgeUnavailable(f"Edge proxy unreachable: {type(e).__name__}")
        if response.status_code >= 500:
            raise EdgeUnavailable(f"Edge proxy answered {response.status_code} to {method} {url}")
        return response

    async def _retrying(self, operation, *args):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_random_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(EdgeUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await operation(*args)

    async def _existing(self, client: httpx.AsyncClient, service_name: str) -> Optional[Dict]:
        response = await self._request(client, "GET", f"/services/{service_name}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise EdgeUnavailable(f"Unexpected {response.status_code} reading service {service_name}")
        service = response.json()
        routes = await self._request(client, "GET", f"/services/{service_name}/routes")
        if routes.status_code != 200:
            raise EdgeUnavailable(f"Unexpected {routes.status_code} reading routes of {service_name}")
        service["routes"] = routes.json().get("data", [])
        return service

    @staticmethod
    def _same_upstream(existing: Dict, upstream_host: str, port: int) -> bool:
        return existing.get("host") == upstream_host and existing.get("port") == port

    @staticmethod
    def _same_route(route: Dict, route_host: str, headers: Dict[str, str]) -> bool:
        wanted_headers = {k: [v] for k, v in headers.items()}
        return route.get("hosts") == [route_host] and (route.get("headers") or {}) == wanted_headers

    async def _create_service(self, client: httpx.AsyncClient, service_name: str, upstream_host: str):
        response = await self._request(client, "POST", "/services", json={
            "name": service_name,
            "host": upstream_host,
            "port": self.upstream_port,
            "protocol": "http",
        })
        if response.status_code == 409:
            raise EdgeConflict(f"Edge service {service_name} was created concurrently")
        if response.status_code not in (200, 201):
            raise EdgeUnavailable(f"Edge proxy refused service {service_name}: {response.status_code}")

    async def _create_route(self, client: httpx.AsyncClient, service_name: str, route_host: str,
                            headers: Dict[str, str]):
        response = await self._request(client, "POST", f"/services/{service_name}/routes", json={
            "name": route_name(service_name),
            "hosts": [route_host],
            "headers": {k: [v] for k, v in headers.items()},
            "protocols": ["http"],
        })
        if response.status_code == 409:
            raise EdgeConflict(f"Edge route for {route_host} already exists")
        if response.status_code not in (200, 201):
            raise EdgeUnavailable(f"Edge proxy refused route {route_host}: {response.status_code}")

    async def _register(self, edge_host: str, vm_id: str, service_name: str, upstream_host: str,
                        hostname: str, headers: Dict[str, str]) -> RouteBinding:
        route_host = self.route_host(hostname)
        binding = RouteBinding(
            vm_id=vm_id,
            service_name=service_name,
            route_url=f"http://{route_host}",
            upstream_host=upstream_host,
            edge_host=edge_host,
            headers=dict(headers),
        )

        async with self._client(edge_host) as client:
            existing = await self._existing(client, service_name)
            if existing is None:
                await self._create_service(client, service_name, upstream_host)
            elif not self._same_upstream(existing, upstream_host, self.upstream_port):
                raise EdgeConflict(f"Edge service {service_name} exists with a different upstream")
            elif existing["routes"]:
                if len(existing["routes"]) == 1 and self._same_route(existing["routes"][0], route_host, headers):
                    logger.info(f"Edge route {service_name} already registered on {edge_host}")
                    return binding
                raise EdgeConflict(f"Edge service {service_name} exists with a different route")
            else:
                # Service left without its route by an earlier attempt
                logger.info(f"Completing edge service {service_name} on {edge_host}")

            await self._create_route(client, service_name, route_host, headers)

        logger.info(f"Edge route {route_host} -> {upstream_host}:{self.upstream_port} registered on {edge_host}")
        return binding

    async def register(self, edge_host: str, vm_id: str, service_name: str, upstream_host: str,
                       hostname: str, headers: Optional[Dict[str, str]] = None) -> RouteBinding:
        return await self._retrying(self._register, edge_host, vm_id, service_name, upstream_host,
                                    hostname, headers or {})

    async def _deregister(self, edge_host: str, service_name: str) -> bool:
        async with self._client(edge_host) as client:
            route = await self._request(client, "DELETE", f"/routes/{route_name(service_name)}")
            service = await self._request(client, "DELETE", f"/services/{service_name}")
        for response in (route, service):
            if response.status_code not in (200, 204, 404):
                raise EdgeUnavailable(f"Edge proxy refused to remove {service_name}: {response.status_code}")
        removed = service.status_code != 404
        if removed:
            logger.info(f"Edge service {service_name} removed from {edge_host}")
        return removed

    async def deregister(self, edge_host: str, service_name: str) -> bool:
        """Removes the service and its route. Returns False when nothing was registered."""
        return await self._retrying(self._deregister, edge_host, service_name)
