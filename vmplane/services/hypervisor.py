import asyncio
import logging
import socket
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import httpx
from fastapi.concurrency import run_in_threadpool
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from vmplane.core.config import settings
from vmplane.core.exceptions import Cancelled, HypervisorUnavailable, NotFound, Timeout, UnsupportedOS
from vmplane.services.placement import (
    ClusterInfo,
    DatacenterInfo,
    DatastoreInfo,
    FolderInfo,
    HostInfo,
    InventorySnapshot,
    NetworkInfo,
)

logger = logging.getLogger(__name__)

TASK_QUEUED = "queued"
TASK_RUNNING = "running"
TASK_SUCCESS = "success"
TASK_ERROR = "error"

POWERED_ON = "poweredOn"
POWERED_OFF = "poweredOff"
SUSPENDED = "suspended"

_MB = 1024 * 1024


@dataclass(frozen=True)
class TaskStatus:
    state: str
    # Managed object id of the task result (the new VM for clones)
    result_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state in (TASK_SUCCESS, TASK_ERROR)


@dataclass(frozen=True)
class GuestCommandResult:
    exit_code: int
    pid: int


def _fault_message(fault) -> str:
    return getattr(fault, "msg", None) or getattr(fault, "localizedMessage", None) or type(fault).__name__


class HypervisorClient:
    """
    Process-wide vCenter connection.

    Users take a lease (`acquire`/`release` or `with client.lease()`); the
    session is opened on the first lease and closed when the last one is
    released. Every call is retried once after a re-login when vCenter
    reports the session as expired. All methods block and are meant to be
    called through `run_in_threadpool`.
    """

    def __init__(self, host: str = None, username: str = None, password: str = None, verify_ssl: bool = None):
        self.host = host or settings.API_SOURCE_IP
        self.username = username or settings.API_SOURCE_USERNAME
        self.password = password or settings.API_SOURCE_PASSWORD
        self.verify_ssl = settings.API_SOURCE_VERIFY_SSL if verify_ssl is None else verify_ssl
        self._si = None
        self._refs = 0
        self._lock = threading.Lock()

    # Connection management

    def _login(self):
        logger.info(f"Connecting to vCenter {self.host} as {self.username}")
        try:
            self._si = SmartConnect(
                host=self.host,
                user=self.username,
                pwd=self.password,
                disableSslCertValidation=not self.verify_ssl,
            )
        except vim.fault.InvalidLogin as e:
            raise HypervisorUnavailable(f"vCenter rejected the service account: {_fault_message(e)}")
        except (vmodl.MethodFault, OSError) as e:
            raise HypervisorUnavailable(f"Cannot reach vCenter {self.host}: {_fault_message(e)}")

    def _logout(self):
        if self._si is None:
            return
        try:
            Disconnect(self._si)
        except (vmodl.MethodFault, OSError) as e:
            logger.warning(f"Error while disconnecting from vCenter: {_fault_message(e)}")
        self._si = None

    def connect(self):
        with self._lock:
            if self._si is None:
                self._login()

    def acquire(self):
        with self._lock:
            if self._si is None:
                self._login()
            self._refs += 1

    def release(self):
        with self._lock:
            self._refs = max(0, self._refs - 1)
            if self._refs == 0:
                self._logout()

    @contextmanager
    def lease(self):
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def close(self):
        with self._lock:
            self._refs = 0
            self._logout()

    @property
    def connected(self) -> bool:
        return self._si is not None

    def _relogin(self, stale_si):
        with self._lock:
            # Another thread may already have replaced the session
            if self._si is stale_si:
                logger.info("vCenter session expired, logging in again")
                self._logout()
                self._login()

    def _call(self, fn, *args, **kwargs):
        if self._si is None:
            self.connect()
        si = self._si
        try:
            return fn(*args, **kwargs)
        except vim.fault.NotAuthenticated:
            self._relogin(si)
        except (vmodl.MethodFault, socket.error) as e:
            raise HypervisorUnavailable(_fault_message(e))
        try:
            return fn(*args, **kwargs)
        except (vmodl.MethodFault, socket.error) as e:
            raise HypervisorUnavailable(_fault_message(e))

    @property
    def _content(self):
        return self._si.RetrieveContent()

    def _ref(self, vim_type, moid: str):
        return vim_type(moid, self._si._stub)

    def _view(self, container, vim_type) -> list:
        view = self._content.viewManager.CreateContainerView(container, [vim_type], True)
        try:
            return list(view.view)
        finally:
            view.Destroy()

    # Inventory

    def _host_info(self, host) -> HostInfo:
        hardware = host.summary.hardware
        stats = host.summary.quickStats
        return HostInfo(
            ref=host._moId,
            name=host.name,
            total_mhz=(hardware.cpuMhz or 0) * (hardware.numCpuCores or 0),
            used_mhz=stats.overallCpuUsage or 0,
            total_memory_mb=(hardware.memorySize or 0) // _MB,
            used_memory_mb=stats.overallMemoryUsage or 0,
            connected=host.runtime.connectionState == "connected",
        )

    def _datastore_info(self, datastore) -> DatastoreInfo:
        summary = datastore.summary
        mounted = tuple(
            mount.key._moId for mount in datastore.host
            if mount.mountInfo.mounted and mount.mountInfo.accessible
        )
        return DatastoreInfo(
            ref=datastore._moId,
            name=summary.name,
            free_kb=(summary.freeSpace or 0) // 1024,
            capacity_kb=(summary.capacity or 0) // 1024,
            accessible=bool(summary.accessible),
            host_refs=mounted,
        )

    def _network_info(self, network) -> NetworkInfo:
        switch_uuid = None
        if isinstance(network, vim.dvs.DistributedVirtualPortgroup):
            switch_uuid = network.config.distributedVirtualSwitch.uuid
        return NetworkInfo(
            ref=network._moId,
            name=network.name,
            host_refs=tuple(h._moId for h in network.host),
            switch_uuid=switch_uuid,
        )

    def _datacenter_info(self, datacenter) -> DatacenterInfo:
        root = FolderInfo(ref=datacenter.vmFolder._moId, name="vm", path=f"/{datacenter.name}/vm")
        folders = [root]
        for child in datacenter.vmFolder.childEntity:
            if isinstance(child, vim.Folder):
                folders.append(FolderInfo(ref=child._moId, name=child.name, path=f"{root.path}/{child.name}"))

        clusters = []
        for cluster in self._view(datacenter.hostFolder, vim.ClusterComputeResource):
            clusters.append(ClusterInfo(
                ref=cluster._moId,
                name=cluster.name,
                resource_pool_ref=cluster.resourcePool._moId,
                hosts=tuple(self._host_info(h) for h in cluster.host),
            ))

        return DatacenterInfo(
            ref=datacenter._moId,
            name=datacenter.name,
            vm_folder=root,
            folders=tuple(folders),
            clusters=tuple(clusters),
            datastores=tuple(self._datastore_info(ds) for ds in datacenter.datastore),
            networks=tuple(self._network_info(n) for n in datacenter.network),
        )

    def datacenters(self) -> List[Tuple[str, str]]:
        def fetch():
            return [(dc._moId, dc.name) for dc in self._view(self._content.rootFolder, vim.Datacenter)]
        return self._call(fetch)

    def datacenter_inventory(self, datacenter_ref: str) -> DatacenterInfo:
        return self._call(lambda: self._datacenter_info(self._ref(vim.Datacenter, datacenter_ref)))

    def inventory(self) -> InventorySnapshot:
        def fetch():
            datacenters = self._view(self._content.rootFolder, vim.Datacenter)
            return InventorySnapshot(datacenters=tuple(self._datacenter_info(dc) for dc in datacenters))
        return self._call(fetch)

    def find_template(self, datacenter_name: str, template_name: str) -> Tuple[str, list]:
        """Returns (template ref, template devices)."""
        path = f"{datacenter_name}/vm/{settings.TEMPLATE_FOLDER}/{template_name}"

        def fetch():
            template = self._content.searchIndex.FindByInventoryPath(path)
            if template is None or not isinstance(template, vim.VirtualMachine):
                raise UnsupportedOS(f"No template {template_name} in datacenter {datacenter_name}")
            return template._moId, list(template.config.hardware.device)
        return self._call(fetch)

    def vm_by_path(self, inventory_path: str) -> Optional[str]:
        def fetch():
            vm = self._content.searchIndex.FindByInventoryPath(inventory_path.lstrip("/"))
            return vm._moId if isinstance(vm, vim.VirtualMachine) else None
        return self._call(fetch)

    def _vm(self, vm_ref: str):
        return self._ref(vim.VirtualMachine, vm_ref)

    def power_state(self, vm_ref: str) -> str:
        return self._call(lambda: str(self._vm(vm_ref).runtime.powerState))

    def guest_ips(self, vm_ref: str) -> List[str]:
        def fetch():
            guest = self._vm(vm_ref).guest
            if guest is None:
                return []
            ips = [guest.ipAddress] if guest.ipAddress else []
            for nic in guest.net or []:
                ips.extend(ip for ip in (nic.ipAddress or []) if ip not in ips)
            return ips
        return self._call(fetch)

    def vm_host(self, vm_ref: str) -> str:
        """Name of the ESXi host currently running the VM."""
        return self._call(lambda: self._vm(vm_ref).runtime.host.name)

    def quick_stats(self, vm_ref: str) -> Dict:
        def fetch():
            vm = self._vm(vm_ref)
            summary = vm.summary
            stats = summary.quickStats
            storage = summary.storage
            return {
                "cpu": {
                    "usageMhz": stats.overallCpuUsage or 0,
                    "demandMhz": stats.overallCpuDemand or 0,
                    "numCpu": summary.config.numCpu,
                },
                "mem": {
                    "guestUsageMB": stats.guestMemoryUsage or 0,
                    "hostUsageMB": stats.hostMemoryUsage or 0,
                    "sizeMB": summary.config.memorySizeMB,
                },
                "storage": {
                    "committedKB": (storage.committed or 0) // 1024 if storage else 0,
                    "uncommittedKB": (storage.uncommitted or 0) // 1024 if storage else 0,
                },
                "alive": {
                    "PowerState": str(summary.runtime.powerState),
                    "GuestHeartbeatStatus": str(stats.guestHeartbeatStatus),
                    "ToolsRunningStatus": str(summary.guest.toolsRunningStatus) if summary.guest else None,
                    "UptimeSeconds": stats.uptimeSeconds or 0,
                },
            }
        return self._call(fetch)

    # Tasks

    def task_state(self, task_ref: str) -> TaskStatus:
        def fetch():
            info = self._ref(vim.Task, task_ref).info
            state = str(info.state)
            result_ref = getattr(info.result, "_moId", None) if state == TASK_SUCCESS else None
            error = _fault_message(info.error) if state == TASK_ERROR and info.error else None
            return TaskStatus(state=state, result_ref=result_ref, error=error)
        return self._call(fetch)

    def cancel_task(self, task_ref: str):
        def cancel():
            try:
                self._ref(vim.Task, task_ref).CancelTask()
            except (vim.fault.InvalidState, vmodl.fault.NotSupported) as e:
                # Already finished, or not cancellable at this stage
                logger.warning(f"Could not cancel task {task_ref}: {_fault_message(e)}")
        self._call(cancel)

    def clone_vm(self, template_ref: str, name: str, folder_ref: str, resource_pool_ref: str,
                 datastore_ref: str, config_spec, customization) -> str:
        def clone():
            relocate = vim.vm.RelocateSpec(
                datastore=self._ref(vim.Datastore, datastore_ref),
                pool=self._ref(vim.ResourcePool, resource_pool_ref),
            )
            spec = vim.vm.CloneSpec(
                location=relocate,
                powerOn=False,
                template=False,
                config=config_spec,
                customization=customization,
            )
            task = self._vm(template_ref).CloneVM_Task(
                folder=self._ref(vim.Folder, folder_ref), name=name, spec=spec
            )
            return task._moId
        logger.info(f"Cloning {name} from template {template_ref}")
        return self._call(clone)

    def power_on(self, vm_ref: str) -> str:
        logger.info(f"Powering on {vm_ref}")
        return self._call(lambda: self._vm(vm_ref).PowerOnVM_Task()._moId)

    def power_off(self, vm_ref: str) -> str:
        logger.info(f"Powering off {vm_ref}")
        return self._call(lambda: self._vm(vm_ref).PowerOffVM_Task()._moId)

    def reboot_guest(self, vm_ref: str) -> Optional[str]:
        """
        Soft reboot through VMware Tools. Falls back to a hard reset task when
        tools are not running; returns that task, or None for a soft reboot.
        """
        def reboot():
            vm = self._vm(vm_ref)
            try:
                vm.RebootGuest()
                return None
            except vim.fault.ToolsUnavailable:
                logger.warning(f"Tools not running on {vm_ref}, resetting instead")
                return vm.ResetVM_Task()._moId
        return self._call(reboot)

    def shutdown_guest(self, vm_ref: str) -> bool:
        """Asks the guest OS to shut down through VMware Tools. False when tools are not running."""
        def shutdown():
            try:
                self._vm(vm_ref).ShutdownGuest()
                return True
            except vim.fault.ToolsUnavailable:
                logger.warning(f"Tools not running on {vm_ref}, cannot shut the guest down")
                return False
        return self._call(shutdown)

    def destroy(self, vm_ref: str) -> str:
        logger.info(f"Destroying {vm_ref}")
        return self._call(lambda: self._vm(vm_ref).Destroy_Task()._moId)

    # Guest operations (through VMware Tools, no network needed)

    def _guest_auth(self, username: str, password: str):
        return vim.vm.guest.NamePasswordAuthentication(username=username, password=password)

    def run_in_guest(self, vm_ref: str, username: str, password: str, program: str, arguments: str = "",
                     timeout: float = 60, poll_interval: float = 1) -> GuestCommandResult:
        # Arguments may carry secrets, only the program is logged
        logger.info(f"Running {program} in guest {vm_ref} as {username} (arguments: ******)")

        def start():
            manager = self._content.guestOperationsManager.processManager
            spec = vim.vm.guest.ProcessManager.ProgramSpec(programPath=program, arguments=arguments)
            return manager.StartProgramInGuest(self._vm(vm_ref), self._guest_auth(username, password), spec)

        pid = self._call(start)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            def poll():
                manager = self._content.guestOperationsManager.processManager
                return manager.ListProcessesInGuest(self._vm(vm_ref), self._guest_auth(username, password), [pid])
            processes = self._call(poll)
            if processes and processes[0].exitCode is not None and processes[0].endTime is not None:
                return GuestCommandResult(exit_code=processes[0].exitCode, pid=pid)
            time.sleep(poll_interval)
        raise Timeout(f"{program} did not finish in guest within {timeout}s")

    def upload_to_guest(self, vm_ref: str, username: str, password: str, guest_path: str, data: bytes):
        logger.info(f"Uploading {len(data)} bytes to {guest_path} in guest {vm_ref}")

        def initiate():
            manager = self._content.guestOperationsManager.fileManager
            return manager.InitiateFileTransferToGuest(
                self._vm(vm_ref),
                self._guest_auth(username, password),
                guest_path,
                vim.vm.guest.FileManager.FileAttributes(),
                len(data),
                True,
            )

        url = self._call(initiate).replace("*", self.host)
        try:
            response = httpx.put(url, content=data, verify=self.verify_ssl, timeout=60)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise HypervisorUnavailable(f"Upload to {guest_path} failed: {e}")

    # Certificate authority (VMCA)

    def sign_csr(self, csr_pem: str, validity_days: int = 730) -> str:
        """Has the vCenter certificate authority sign `csr_pem`; returns the leaf in PEM."""
        base_url = f"https://{self.host}/api"
        try:
            with httpx.Client(verify=self.verify_ssl, timeout=30) as client:
                session = client.post(f"{base_url}/session", auth=(self.username, self.password))
                session.raise_for_status()
                headers = {"vmware-api-session-id": session.json()}
                try:
                    response = client.post(
                        f"{base_url}/vcenter/certificate-management/vcenter/signing-certificate",
                        params={"action": "sign-cert-from-csr"},
                        json={"csr": csr_pem, "validity": validity_days},
                        headers=headers,
                    )
                    response.raise_for_status()
                finally:
                    client.delete(f"{base_url}/session", headers=headers)
        except httpx.HTTPError as e:
            raise HypervisorUnavailable(f"Certificate signing failed: {e}")

        body = response.json()
        cert = body.get("cert") if isinstance(body, dict) else body
        if not cert:
            raise HypervisorUnavailable("Certificate authority returned an empty certificate")
        return cert


async def wait_for_task(hypervisor, task_ref: str, timeout: float, cancel_event: asyncio.Event = None,
                        poll_interval: float = None) -> TaskStatus:
    """
    Polls `task_ref` until it finishes. When `timeout` passes or `cancel_event`
    is set first, the task is cancelled on the hypervisor and Timeout/Cancelled
    is raised. A failed task raises HypervisorUnavailable.
    """
    poll_interval = poll_interval or settings.TASK_POLL_INTERVAL_SECONDS
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    try:
        while True:
            status = await run_in_threadpool(hypervisor.task_state, task_ref)
            if status.state == TASK_SUCCESS:
                return status
            if status.state == TASK_ERROR:
                raise HypervisorUnavailable(status.error or f"Task {task_ref} failed")

            if cancel_event is not None and cancel_event.is_set():
                await run_in_threadpool(hypervisor.cancel_task, task_ref)
                raise Cancelled(f"Task {task_ref} cancelled")

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Task {task_ref} exceeded {timeout}s, cancelling")
                await run_in_threadpool(hypervisor.cancel_task, task_ref)
                raise Timeout(f"Hypervisor task did not finish within {timeout:.0f}s")

            wait = min(poll_interval, remaining)
            if cancel_event is None:
                await asyncio.sleep(wait)
            else:
                try:
                    await asyncio.wait_for(cancel_event.wait(), wait)
                except asyncio.TimeoutError:
                    pass
    except asyncio.CancelledError:
        # Caller was cancelled outright; don't leave the task running on vCenter
        await asyncio.shield(run_in_threadpool(hypervisor.cancel_task, task_ref))
        raise


def require_vm(hypervisor, inventory_path: str) -> str:
    vm_ref = hypervisor.vm_by_path(inventory_path)
    if vm_ref is None:
        raise NotFound(f"VM {inventory_path} does not exist on the hypervisor")
    return vm_ref
