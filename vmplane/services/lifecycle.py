import asyncio
import logging
from typing import Dict

from fastapi.concurrency import run_in_threadpool

from vmplane.core.config import settings as default_settings
from vmplane.core.exceptions import Conflict
from vmplane.models.vm import SshMode, VirtualMachine, VMState
from vmplane.services import guest_os
from vmplane.services.hypervisor import POWERED_OFF, POWERED_ON, wait_for_task
from vmplane.services.orchestrator import Deadline, service_name

logger = logging.getLogger(__name__)


class LifecycleManager:
    """
    start / reboot / shutdown / destroy of a customer's VM, plus SSH key rotation.

    Each operation checks ownership through the catalog, drives one
    hypervisor task under the control deadline and then records the new
    state. Asking for the state the VM is already in is a no-op.
    """

    def __init__(self, hypervisor, catalog, edge, config=None, credentials=None):
        self.hypervisor = hypervisor
        self.catalog = catalog
        self.edge = edge
        self.credentials = credentials
        self.config = config or default_settings

    def _vm_ref(self, vm: VirtualMachine):
        return run_in_threadpool(self.hypervisor.vm_by_path, vm.inventory_path)

    async def _require_ref(self, vm: VirtualMachine) -> str:
        vm_ref = await self._vm_ref(vm)
        if vm_ref is None:
            raise Conflict(f"VM {vm.id} is missing on the hypervisor")
        return vm_ref

    def _require_state(self, vm: VirtualMachine, *states: VMState):
        if vm.state not in states:
            raise Conflict(f"VM {vm.id} is {vm.state.value}")

    async def _drive(self, task_ref, deadline: Deadline):
        if task_ref is None:
            return
        await wait_for_task(self.hypervisor, task_ref, deadline.cap(self.config.CONTROL_TIMEOUT_SECONDS),
                            poll_interval=self.config.TASK_POLL_INTERVAL_SECONDS)

    async def start(self, vm_id: str, customer_id: int) -> Dict:
        vm = self.catalog.get_owned(vm_id, customer_id)
        self._require_state(vm, VMState.RUNNING, VMState.STOPPED)
        deadline = Deadline(self.config.CONTROL_TIMEOUT_SECONDS)
        vm_ref = await self._require_ref(vm)

        power_state = await run_in_threadpool(self.hypervisor.power_state, vm_ref)
        changed = power_state != POWERED_ON
        if changed:
            await self._drive(await run_in_threadpool(self.hypervisor.power_on, vm_ref), deadline)
            logger.info(f"VM {vm.id} started")
        if vm.state != VMState.RUNNING:
            self.catalog.set_state(vm.id, VMState.RUNNING)
        return {"vmId": vm.id, "state": VMState.RUNNING.value, "changed": changed}

    async def _shutdown_guest(self, vm: VirtualMachine, vm_ref: str) -> bool:
        """Asks the guest OS to shut down. False when it is still powered on once the grace period ends."""
        if not await run_in_threadpool(self.hypervisor.shutdown_guest, vm_ref):
            return False
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + self.config.GUEST_SHUTDOWN_TIMEOUT_SECONDS
        while loop.time() < give_up_at:
            if await run_in_threadpool(self.hypervisor.power_state, vm_ref) == POWERED_OFF:
                return True
            await asyncio.sleep(self.config.TASK_POLL_INTERVAL_SECONDS)
        logger.warning(f"Guest of VM {vm.id} did not shut down within "
                       f"{self.config.GUEST_SHUTDOWN_TIMEOUT_SECONDS:.0f}s, powering off")
        return False

    async def shutdown(self, vm_id: str, customer_id: int, soft: bool = False) -> Dict:
        """
        Powers the VM off. With `soft`, the guest OS is asked to shut down
        first and the VM is only powered off if that does not finish in time.
        """
        vm = self.catalog.get_owned(vm_id, customer_id)
        self._require_state(vm, VMState.RUNNING, VMState.STOPPED)
        vm_ref = await self._require_ref(vm)

        power_state = await run_in_threadpool(self.hypervisor.power_state, vm_ref)
        changed = power_state != POWERED_OFF
        if changed:
            if soft and await self._shutdown_guest(vm, vm_ref):
                logger.info(f"VM {vm.id} shut down by its guest")
            else:
                deadline = Deadline(self.config.CONTROL_TIMEOUT_SECONDS)
                await self._drive(await run_in_threadpool(self.hypervisor.power_off, vm_ref), deadline)
                logger.info(f"VM {vm.id} shut down")
        if vm.state != VMState.STOPPED:
            self.catalog.set_state(vm.id, VMState.STOPPED)
        return {"vmId": vm.id, "state": VMState.STOPPED.value, "changed": changed}

    async def reboot(self, vm_id: str, customer_id: int) -> Dict:
        vm = self.catalog.get_owned(vm_id, customer_id)
        self._require_state(vm, VMState.RUNNING)
        deadline = Deadline(self.config.CONTROL_TIMEOUT_SECONDS)
        vm_ref = await self._require_ref(vm)

        power_state = await run_in_threadpool(self.hypervisor.power_state, vm_ref)
        if power_state != POWERED_ON:
            raise Conflict(f"VM {vm.id} is not powered on")
        await self._drive(await run_in_threadpool(self.hypervisor.reboot_guest, vm_ref), deadline)
        logger.info(f"VM {vm.id} rebooted")
        return {"vmId": vm.id, "state": vm.state.value, "changed": True}

    async def destroy(self, vm_id: str, customer_id: int) -> Dict:
        vm = self.catalog.get_owned(vm_id, customer_id, include_destroyed=True)
        if vm.state == VMState.DESTROYED:
            return {"vmId": vm.id, "already": True}
        self._require_state(vm, VMState.RUNNING, VMState.STOPPED, VMState.FAILED)
        deadline = Deadline(self.config.CONTROL_TIMEOUT_SECONDS)

        vm_ref = await self._vm_ref(vm)
        binding = self.catalog.get_route_binding(vm.id)
        if binding is not None:
            await self.edge.deregister(binding.edge_host, binding.service_name)
        elif vm_ref is not None:
            # No binding recorded; clear whatever the VM's edge may still hold
            customer = self.catalog.get_customer(customer_id)
            edge_host = await run_in_threadpool(self.hypervisor.vm_host, vm_ref)
            await self.edge.deregister(edge_host, service_name(customer.username, vm.id))

        if vm_ref is not None:
            power_state = await run_in_threadpool(self.hypervisor.power_state, vm_ref)
            if power_state != POWERED_OFF:
                await self._drive(await run_in_threadpool(self.hypervisor.power_off, vm_ref), deadline)
            await self._drive(await run_in_threadpool(self.hypervisor.destroy, vm_ref), deadline)
        else:
            logger.warning(f"VM {vm.id} was already gone from the hypervisor")

        self.catalog.mark_destroyed(vm.id)
        logger.info(f"VM {vm.id} destroyed")
        return {"vmId": vm.id, "already": False}

    async def rotate_ssh_key(self, vm_id: str, customer_id: int) -> Dict:
        """Replaces the certificate key of a running VM and returns the new key material."""
        vm = self.catalog.get_owned(vm_id, customer_id)
        self._require_state(vm, VMState.RUNNING)
        current = self.catalog.get_ssh_info(vm.id)
        if current is None or current.mode != SshMode.CERTIFICATE:
            raise Conflict(f"VM {vm.id} does not use certificate access")
        vm_ref = await self._require_ref(vm)
        if await run_in_threadpool(self.hypervisor.power_state, vm_ref) != POWERED_ON:
            raise Conflict(f"VM {vm.id} is not powered on")

        profile = guest_os.resolve(vm.os_name, vm.os_bitness)
        issued = await self.credentials.rotate(current, vm, vm_ref, profile)
        info = self.catalog.replace_ssh_info(vm.id, issued.ssh_info)
        return {"pem": info.public_cert, "fingerprint": info.fingerprint, "privateKey": issued.ssh.private_key_pem}
