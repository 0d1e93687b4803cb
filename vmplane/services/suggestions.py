import asyncio
import logging
from typing import Dict, List

from fastapi.concurrency import run_in_threadpool

from vmplane.core.exceptions import NotFound
from vmplane.schemas import Tool
from vmplane.services import guest_os

logger = logging.getLogger(__name__)

KINDS = ("datacenters", "datastores", "networks", "folders", "clusters", "osList", "tools", "loadBalancers")


def _item(id: str, name: str, **metadata) -> Dict:
    return {"id": id, "name": name, "metadata": metadata}


class SuggestionService:
    """Choices offered to client wizards, read from the live inventory."""

    def __init__(self, hypervisor, edge):
        self.hypervisor = hypervisor
        self.edge = edge

    async def _datacenters(self):
        refs = await run_in_threadpool(self.hypervisor.datacenters)
        # One threadpool call per datacenter; gather collects the results in order
        return await asyncio.gather(*(
            run_in_threadpool(self.hypervisor.datacenter_inventory, ref) for ref, _ in refs
        ))

    @staticmethod
    def _project(kind: str, datacenters) -> List[Dict]:
        items = []
        for dc in datacenters:
            if kind == "datacenters":
                items.append(_item(dc.ref, dc.name, clusters=len(dc.clusters)))
            elif kind == "datastores":
                items.extend(_item(ds.ref, ds.name, datacenter=dc.name, freeKB=ds.free_kb,
                                   capacityKB=ds.capacity_kb, accessible=ds.accessible) for ds in dc.datastores)
            elif kind == "networks":
                items.extend(_item(n.ref, n.name, datacenter=dc.name, distributed=n.switch_uuid is not None)
                             for n in dc.networks)
            elif kind == "folders":
                items.extend(_item(f.ref, f.name, datacenter=dc.name, path=f.path) for f in dc.folders)
            elif kind == "clusters":
                items.extend(_item(c.ref, c.name, datacenter=dc.name, hosts=len(c.hosts), freeMhz=c.free_mhz,
                                   freeMemoryMB=c.free_memory_mb) for c in dc.clusters)
        return items

    def _static(self, kind: str) -> List[Dict]:
        if kind == "osList":
            return [_item(f"{p.name}{p.bitness}", p.display_name or p.name, osName=p.name, osBitness=p.bitness,
                          family=p.family) for p in guest_os.supported()]
        if kind == "tools":
            return [_item(tool.value, tool.value) for tool in Tool]
        if kind == "loadBalancers":
            return [_item(host, host, socket=self.edge.socket_path(host)) for host in self.edge.available_hosts()]
        return []

    async def collect(self, kind: str) -> List[Dict]:
        if kind not in KINDS:
            raise NotFound(f"Unknown suggestion list {kind}")
        if kind in ("osList", "tools", "loadBalancers"):
            return self._static(kind)
        return self._project(kind, await self._datacenters())

    async def collect_all(self) -> Dict[str, List[Dict]]:
        datacenters = await self._datacenters()
        result = {}
        for kind in KINDS:
            result[kind] = self._static(kind) if kind in ("osList", "tools", "loadBalancers") \
                else self._project(kind, datacenters)
        return result
