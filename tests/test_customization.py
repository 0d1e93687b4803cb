"""Tests for the clone spec builders in vmplane.services.customization."""
import pytest
from pyVmomi import vim

from fakes import template_devices
from vmplane.services import customization, guest_os
from vmplane.services.placement import Placement

PLACEMENT = Placement(
    datacenter_ref="datacenter-1",
    datacenter_name="DC1",
    folder_ref="group-v3",
    folder_path="/DC1/vm",
    cluster_ref="domain-c7",
    resource_pool_ref="resgroup-8",
    datastore_ref="datastore-11",
    datastore_name="datastore1",
    network_ref="network-13",
    network_name="VM Network",
)


def _added(changes, device_type):
    return [c for c in changes
            if c.operation == vim.vm.device.VirtualDeviceSpec.Operation.add and isinstance(c.device, device_type)]


class TestStorage:
    def test_disk_on_existing_controller(self, hardware):
        changes = customization.storage_device_changes(hardware, PLACEMENT, template_devices())
        assert len(changes) == 1
        disk = changes[0].device
        assert isinstance(disk, vim.vm.device.VirtualDisk)
        assert changes[0].fileOperation == vim.vm.device.VirtualDeviceSpec.FileOperation.create
        assert disk.controllerKey == 1000
        # Unit 0 holds the boot disk
        assert disk.unitNumber == 1
        assert disk.capacityInKB == hardware.disk_capacity_kb
        assert disk.backing.thinProvisioned is True
        assert disk.backing.diskMode == "persistent"
        assert disk.backing.fileName == "[datastore1]"
        assert disk.backing.datastore._moId == "datastore-11"

    def test_controller_added_when_template_has_none(self, hardware):
        devices = [d for d in template_devices() if not isinstance(d, vim.vm.device.VirtualSCSIController)]
        changes = customization.storage_device_changes(hardware, PLACEMENT, devices)
        controllers = _added(changes, vim.vm.device.ParaVirtualSCSIController)
        disks = _added(changes, vim.vm.device.VirtualDisk)
        assert len(controllers) == 1 and len(disks) == 1
        assert disks[0].device.controllerKey == controllers[0].device.key
        assert disks[0].device.unitNumber == 0

    def test_unit_seven_is_skipped(self, hardware):
        devices = [vim.vm.device.VirtualLsiLogicController(key=1000, busNumber=0)]
        devices += [vim.vm.device.VirtualDisk(key=2000 + unit, controllerKey=1000, unitNumber=unit)
                    for unit in range(7)]
        disk = customization.storage_device_changes(hardware, PLACEMENT, devices)[0].device
        assert disk.unitNumber == 8

    def test_full_controller_raises(self, hardware):
        devices = [vim.vm.device.VirtualLsiLogicController(key=1000, busNumber=0)]
        devices += [vim.vm.device.VirtualDisk(key=2000 + unit, controllerKey=1000, unitNumber=unit)
                    for unit in range(16) if unit != 7]
        with pytest.raises(ValueError):
            customization.storage_device_changes(hardware, PLACEMENT, devices)


class TestNic:
    def test_standard_port_group(self):
        changes = customization.nic_device_changes(PLACEMENT, template_devices())
        assert len(changes) == 1
        assert changes[0].operation == vim.vm.device.VirtualDeviceSpec.Operation.edit
        backing = changes[0].device.backing
        assert isinstance(backing, vim.vm.device.VirtualEthernetCard.NetworkBackingInfo)
        assert backing.deviceName == "VM Network"
        assert changes[0].device.connectable.startConnected is True

    def test_distributed_port_group(self):
        placement = Placement(**{**PLACEMENT.__dict__, "network_ref": "dvportgroup-14",
                                 "network_name": "Backend", "network_switch_uuid": "50 2a 7c 11"})
        backing = customization.nic_device_changes(placement, template_devices())[0].device.backing
        assert isinstance(backing, vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo)
        assert backing.port.portgroupKey == "dvportgroup-14"
        assert backing.port.switchUuid == "50 2a 7c 11"

    def test_template_without_nic(self):
        devices = [d for d in template_devices() if not isinstance(d, vim.vm.device.VirtualEthernetCard)]
        assert customization.nic_device_changes(PLACEMENT, devices) == []


class TestResources:
    @pytest.mark.parametrize("cpus,cores", [(1, 1), (2, 1), (3, 1), (4, 2), (5, 1), (7, 1), (8, 4)])
    def test_cores_per_socket(self, hardware, cpus, cores):
        hw = hardware.model_copy(update={"cpu_count": cpus})
        spec = customization.resource_config(hw, guest_os.resolve("ubuntu", 64))
        assert spec.numCPUs == cpus
        assert spec.numCoresPerSocket == cores

    def test_memory_taken_literally_and_hot_add(self, hardware):
        spec = customization.resource_config(hardware, guest_os.resolve("ubuntu", 64))
        assert spec.memoryMB == 8192
        assert spec.cpuHotAddEnabled is True
        assert spec.memoryHotAddEnabled is True
        assert spec.guestId == "ubuntu64Guest"

    def test_config_spec_carries_disk_and_nic(self, hardware):
        spec = customization.build_config_spec(hardware, guest_os.resolve("ubuntu", 64), PLACEMENT,
                                               template_devices())
        kinds = [type(change.device) for change in spec.deviceChange]
        assert vim.vm.device.VirtualDisk in kinds
        assert vim.vm.device.VirtualVmxnet3 in kinds


class TestNetworkCustomization:
    def test_linux(self, hardware):
        spec = customization.network_customization(hardware, guest_os.resolve("ubuntu", 64), "corp.local",
                                                   ["1.1.1.1"])
        adapter = spec.nicSettingMap[0].adapter
        assert adapter.ip.ipAddress == "10.0.0.42"
        assert adapter.subnetMask == "255.255.255.0"
        assert list(adapter.gateway) == ["10.0.0.1"]
        assert not adapter.dnsServerList
        assert list(spec.globalIPSettings.dnsServerList) == ["1.1.1.1"]
        assert spec.identity.hostName.name == "web01"

    def test_windows_sets_dns_per_adapter(self, hardware):
        spec = customization.network_customization(hardware, guest_os.resolve("windows", 64), "corp.local",
                                                   ["1.1.1.1", "1.0.0.1"])
        assert list(spec.nicSettingMap[0].adapter.dnsServerList) == ["1.1.1.1", "1.0.0.1"]
        assert isinstance(spec.identity, vim.vm.customization.Sysprep)
