"""
Pure builders turning a validated hardware spec into the pyVmomi fragments
used by the clone call: guest customization (network + identity), the data
disk, the NIC backing and the CPU/memory sizing.
"""
from typing import List, Optional, Sequence

from pyVmomi import vim

from vmplane.schemas import HardwareSpec
from vmplane.services.guest_os import OSProfile
from vmplane.services.placement import Placement

# SCSI unit 7 is reserved for the controller itself
_SCSI_RESERVED_UNIT = 7
_SCSI_MAX_UNITS = 16

_NEW_CONTROLLER_KEY = -100
_NEW_DISK_KEY = -101


def network_customization(hw: HardwareSpec, profile: OSProfile, domain: str, dns_servers: Sequence[str],
                          admin_password: Optional[str] = None):
    adapter = vim.vm.customization.IPSettings(
        ip=vim.vm.customization.FixedIp(ipAddress=hw.network_ip),
        subnetMask=hw.netmask,
        gateway=[hw.gateway],
    )
    if profile.is_windows:
        # Windows reads DNS per adapter, Linux from the global settings
        adapter.dnsServerList = list(dns_servers)

    return vim.vm.customization.Specification(
        nicSettingMap=[vim.vm.customization.AdapterMapping(adapter=adapter)],
        globalIPSettings=vim.vm.customization.GlobalIPSettings(dnsServerList=list(dns_servers)),
        identity=profile.identity(hw.hostname, domain, admin_password),
        options=profile.customization_options(),
    )


def _scsi_controllers(devices) -> List:
    return [d for d in devices if isinstance(d, vim.vm.device.VirtualSCSIController)]


def _free_unit_number(devices, controller_key: int) -> int:
    used = {d.unitNumber for d in devices
            if getattr(d, "controllerKey", None) == controller_key and d.unitNumber is not None}
    for unit in range(_SCSI_MAX_UNITS):
        if unit != _SCSI_RESERVED_UNIT and unit not in used:
            return unit
    raise ValueError(f"SCSI controller {controller_key} has no free unit")


def storage_device_changes(hw: HardwareSpec, placement: Placement, devices) -> List:
    """
    Device changes adding one thin provisioned, persistent data disk of
    `hw.disk_capacity_kb` on the placement datastore. The disk goes on the first
    SCSI controller of the template; one is added when the template has none.
    """
    changes = []
    controllers = _scsi_controllers(devices)

    if controllers:
        controller_key = controllers[0].key
        unit_number = _free_unit_number(devices, controller_key)
    else:
        controller = vim.vm.device.ParaVirtualSCSIController(
            key=_NEW_CONTROLLER_KEY,
            busNumber=0,
            sharedBus=vim.vm.device.VirtualSCSIController.Sharing.noSharing,
        )
        changes.append(vim.vm.device.VirtualDeviceSpec(
            operation=vim.vm.device.VirtualDeviceSpec.Operation.add,
            device=controller,
        ))
        controller_key = _NEW_CONTROLLER_KEY
        unit_number = 0

    backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo(
        diskMode="persistent",
        thinProvisioned=True,
        fileName=f"[{placement.datastore_name}]",
        datastore=vim.Datastore(placement.datastore_ref),
    )
    disk = vim.vm.device.VirtualDisk(
        key=_NEW_DISK_KEY,
        controllerKey=controller_key,
        unitNumber=unit_number,
        capacityInKB=hw.disk_capacity_kb,
        backing=backing,
    )
    changes.append(vim.vm.device.VirtualDeviceSpec(
        operation=vim.vm.device.VirtualDeviceSpec.Operation.add,
        fileOperation=vim.vm.device.VirtualDeviceSpec.FileOperation.create,
        device=disk,
    ))
    return changes


def nic_device_changes(placement: Placement, devices) -> List:
    """Re-points the template's first NIC at the placement network."""
    nics = [d for d in devices if isinstance(d, vim.vm.device.VirtualEthernetCard)]
    if not nics:
        return []
    nic = nics[0]

    if placement.network_switch_uuid:
        nic.backing = vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo(
            port=vim.dvs.PortConnection(
                portgroupKey=placement.network_ref,
                switchUuid=placement.network_switch_uuid,
            )
        )
    else:
        nic.backing = vim.vm.device.VirtualEthernetCard.NetworkBackingInfo(
            network=vim.Network(placement.network_ref),
            deviceName=placement.network_name,
        )
    nic.connectable = vim.vm.device.VirtualDevice.ConnectInfo(startConnected=True, allowGuestControl=True,
                                                              connected=True)
    return [vim.vm.device.VirtualDeviceSpec(
        operation=vim.vm.device.VirtualDeviceSpec.Operation.edit,
        device=nic,
    )]


def cores_per_socket(cpu_count: int) -> int:
    # Two sockets when the count splits evenly; numCPUs must be a multiple of the cores per socket
    if cpu_count >= 2 and cpu_count % 2 == 0:
        return cpu_count // 2
    return 1


def resource_config(hw: HardwareSpec, profile: OSProfile):
    # memoryMB is taken literally, no unit conversion
    return vim.vm.ConfigSpec(
        numCPUs=hw.cpu_count,
        numCoresPerSocket=cores_per_socket(hw.cpu_count),
        memoryMB=hw.memory_mb,
        cpuHotAddEnabled=True,
        memoryHotAddEnabled=True,
        guestId=profile.guest_id,
    )


def build_config_spec(hw: HardwareSpec, profile: OSProfile, placement: Placement, devices):
    spec = resource_config(hw, profile)
    spec.deviceChange = storage_device_changes(hw, placement, devices) + nic_device_changes(placement, devices)
    return spec
