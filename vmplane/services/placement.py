import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from vmplane.core.exceptions import NoCapacity
from vmplane.schemas import HardwareSpec

logger = logging.getLogger(__name__)

# Capacity a single requested vCPU is expected to consume on a host
MHZ_PER_VCPU = 2000
HEADROOM = 1.10


# Immutable snapshot of the hypervisor inventory. Built by the hypervisor client,
# consumed here and by the suggestion endpoints.

@dataclass(frozen=True)
class HostInfo:
    ref: str
    name: str
    total_mhz: int
    used_mhz: int
    total_memory_mb: int
    used_memory_mb: int
    connected: bool = True

    @property
    def free_mhz(self) -> int:
        return max(0, self.total_mhz - self.used_mhz)

    @property
    def free_memory_mb(self) -> int:
        return max(0, self.total_memory_mb - self.used_memory_mb)


@dataclass(frozen=True)
class DatastoreInfo:
    ref: str
    name: str
    free_kb: int
    capacity_kb: int
    accessible: bool
    host_refs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NetworkInfo:
    ref: str
    name: str
    host_refs: Tuple[str, ...] = ()
    # Set for distributed port groups
    switch_uuid: Optional[str] = None


@dataclass(frozen=True)
class FolderInfo:
    ref: str
    name: str
    path: str


@dataclass(frozen=True)
class ClusterInfo:
    ref: str
    name: str
    resource_pool_ref: str
    hosts: Tuple[HostInfo, ...] = ()

    @property
    def free_mhz(self) -> int:
        return sum(h.free_mhz for h in self.hosts if h.connected)

    @property
    def free_memory_mb(self) -> int:
        return sum(h.free_memory_mb for h in self.hosts if h.connected)

    @property
    def host_refs(self) -> Tuple[str, ...]:
        return tuple(h.ref for h in self.hosts)


@dataclass(frozen=True)
class DatacenterInfo:
    ref: str
    name: str
    vm_folder: FolderInfo
    folders: Tuple[FolderInfo, ...] = ()
    clusters: Tuple[ClusterInfo, ...] = ()
    datastores: Tuple[DatastoreInfo, ...] = ()
    networks: Tuple[NetworkInfo, ...] = ()


@dataclass(frozen=True)
class InventorySnapshot:
    datacenters: Tuple[DatacenterInfo, ...] = ()


@dataclass(frozen=True)
class Placement:
    datacenter_ref: str
    datacenter_name: str
    folder_ref: str
    folder_path: str
    cluster_ref: str
    resource_pool_ref: str
    datastore_ref: str
    datastore_name: str
    network_ref: str
    network_name: str
    network_switch_uuid: Optional[str] = None
    host_refs: Tuple[str, ...] = field(default=())


def cluster_fits(cluster: ClusterInfo, hw: HardwareSpec) -> bool:
    return (cluster.free_mhz >= hw.cpu_count * MHZ_PER_VCPU
            and cluster.free_memory_mb >= hw.memory_mb * HEADROOM)


def datastore_fits(datastore: DatastoreInfo, cluster: ClusterInfo, hw: HardwareSpec) -> bool:
    if not datastore.accessible or datastore.free_kb < hw.disk_capacity_kb * HEADROOM:
        return False
    # Must be mounted on every host of the cluster, otherwise DRS/HA can't move the VM
    mounted = set(datastore.host_refs)
    return bool(cluster.hosts) and all(ref in mounted for ref in cluster.host_refs)


def network_fits(network: NetworkInfo, cluster: ClusterInfo, hw: HardwareSpec,
                 subnets: Dict[str, str]) -> bool:
    reachable = set(network.host_refs)
    if not any(ref in reachable for ref in cluster.host_refs):
        return False
    cidr = subnets.get(network.name)
    if not cidr:
        # Subnet unknown for this port group: any reachable one will do
        return True
    try:
        return ipaddress.IPv4Address(hw.network_ip) in ipaddress.IPv4Network(cidr, strict=False)
    except ValueError:
        logger.warning(f"Ignoring invalid subnet {cidr!r} configured for network {network.name}")
        return False


def select(snapshot: InventorySnapshot, hw: HardwareSpec, subnets: Optional[Dict[str, str]] = None) -> Placement:
    """
    Picks (datacenter, folder, cluster, datastore, network) for `hw`.

    Clusters are ranked by free CPU (highest first), datastores within a
    cluster by free space, networks keep inventory order. The sort is stable
    so identical snapshots always give identical placements.
    """
    subnets = subnets or {}
    candidates = []
    for datacenter in snapshot.datacenters:
        for cluster in datacenter.clusters:
            if cluster_fits(cluster, hw):
                candidates.append((datacenter, cluster))

    candidates.sort(key=lambda item: item[1].free_mhz, reverse=True)

    for datacenter, cluster in candidates:
        datastores = [ds for ds in datacenter.datastores if datastore_fits(ds, cluster, hw)]
        if not datastores:
            logger.debug(f"Cluster {cluster.name}: no datastore with {hw.disk_capacity_kb} KB free")
            continue
        datastores.sort(key=lambda ds: ds.free_kb, reverse=True)

        network = next((n for n in datacenter.networks if network_fits(n, cluster, hw, subnets)), None)
        if network is None:
            logger.debug(f"Cluster {cluster.name}: no network reaching {hw.network_ip}")
            continue

        datastore = datastores[0]
        placement = Placement(
            datacenter_ref=datacenter.ref,
            datacenter_name=datacenter.name,
            folder_ref=datacenter.vm_folder.ref,
            folder_path=datacenter.vm_folder.path,
            cluster_ref=cluster.ref,
            resource_pool_ref=cluster.resource_pool_ref,
            datastore_ref=datastore.ref,
            datastore_name=datastore.name,
            network_ref=network.ref,
            network_name=network.name,
            network_switch_uuid=network.switch_uuid,
            host_refs=cluster.host_refs,
        )
        logger.info(f"Selected placement {datacenter.name}/{cluster.name}/{datastore.name}/{network.name}")
        return placement

    raise NoCapacity(
        f"No cluster can host {hw.cpu_count} vCPU / {hw.memory_mb} MB / {hw.disk_capacity_kb} KB "
        f"on a network reaching {hw.network_ip}"
    )
