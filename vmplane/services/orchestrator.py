import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from vmplane.core.config import settings as default_settings
from vmplane.core.exceptions import (
    BootstrapFailed, Cancelled, Conflict, ControlPlaneError, DeploymentInternal, Timeout, wrap,
)
from vmplane.models.audit import DeploymentAudit
from vmplane.models.route_binding import RouteBinding
from vmplane.models.vm import SshMode, VirtualMachine, new_vm_id
from vmplane.schemas import CustomSpec, HardwareSpec
from vmplane.services import customization, guest_os, placement as selector
from vmplane.services.bootstrap import command_source
from vmplane.services.credentials import IssuedCredentials
from vmplane.services.hypervisor import POWERED_OFF, wait_for_task

logger = logging.getLogger(__name__)


class DeploymentState(str, Enum):
    INIT = "INIT"
    SELECTED = "SELECTED"
    TX_OPEN = "TX_OPEN"
    CLONED = "CLONED"
    POWERED_ON = "POWERED_ON"
    IP_READY = "IP_READY"
    CREDENTIALED = "CREDENTIALED"
    BOOTSTRAPPED = "BOOTSTRAPPED"
    ROUTED = "ROUTED"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"


class KeyedMutex:
    """
    One asyncio.Lock per key, dropped again once nobody holds or waits for it.
    asyncio.Lock hands the lock to waiters in FIFO order.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __contains__(self, key) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(self, key: Hashable, timeout: float):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise Conflict(f"Another deployment of {key[-1] if isinstance(key, tuple) else key} is in progress")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class Deadline:
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def cap(self, seconds: float) -> float:
        """`seconds`, shortened to what is left of the deadline."""
        remaining = self.remaining()
        if remaining <= 0:
            raise Timeout("Deployment deadline exceeded")
        return min(seconds, remaining)


@dataclass
class DeployResult:
    vm_id: str
    inventory_path: str
    ssh_mode: SshMode
    route_url: Optional[str] = None
    # rootPassword mode only
    root_password: Optional[str] = field(default=None, repr=False)


@dataclass
class Deployment:
    customer_id: int
    hw: HardwareSpec
    custom: CustomSpec
    cancel_event: asyncio.Event
    deadline: Deadline
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: DeploymentState = DeploymentState.INIT
    username: str = ""
    profile: Optional[guest_os.OSProfile] = None
    placement: Optional[selector.Placement] = None
    vm: Optional[VirtualMachine] = None
    vm_ref: Optional[str] = None
    issued: Optional[IssuedCredentials] = None
    binding: Optional[RouteBinding] = None
    undo: List[Tuple[str, Callable[["Deployment"], Awaitable[None]]]] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"deployment {self.id[:8]} ({self.custom.vm_name})"


def service_name(username: str, vm_id: str) -> str:
    return f"{username}-{vm_id}"


class DeploymentOrchestrator:
    """
    Drives one VM from spec to a running, reachable, routed instance.

    Every forward step that changes something outside the process pushes
    its compensator on the deployment's undo stack. Any failure or
    cancellation pops and runs them in reverse, records an audit row when
    the catalog had already been touched, and re-raises the error. Errors
    outside the taxonomy reach the caller as a fixed DeploymentInternal.
    """

    def __init__(self, hypervisor, catalog, credentials, executor, edge, config=None):
        self.hypervisor = hypervisor
        self.catalog = catalog
        self.credentials = credentials
        self.executor = executor
        self.edge = edge
        self.config = config or default_settings
        self.locks = KeyedMutex()

    async def deploy(self, customer_id: int, hw: HardwareSpec, custom: CustomSpec,
                     cancel_event: Optional[asyncio.Event] = None) -> DeployResult:
        deployment = Deployment(
            customer_id=customer_id,
            hw=hw,
            custom=custom,
            cancel_event=cancel_event or asyncio.Event(),
            deadline=Deadline(self.config.DEPLOYMENT_TIMEOUT_SECONDS),
        )
        async with self.locks.hold((customer_id, custom.vm_name), self.config.DEPLOY_LOCK_TIMEOUT_SECONDS):
            logger.info(f"Starting {deployment.label} for customer {customer_id}")
            try:
                return await self._run(deployment)
            except asyncio.CancelledError:
                await asyncio.shield(self._fail(deployment, Cancelled("Deployment task was cancelled")))
                raise
            except ControlPlaneError as e:
                await self._fail(deployment, e)
                raise
            except Exception as e:
                logger.exception(f"Unexpected error in {deployment.label}")
                # Raw text stays in the audit row
                await self._fail(deployment, wrap(e))
                raise DeploymentInternal() from e

    # Pipeline

    def _checkpoint(self, deployment: Deployment):
        if deployment.cancel_event.is_set():
            raise Cancelled(f"Deployment cancelled in state {deployment.state.value}")
        if deployment.deadline.expired:
            raise Timeout(f"Deployment deadline exceeded in state {deployment.state.value}")

    def _advance(self, deployment: Deployment, state: DeploymentState):
        deployment.state = state
        logger.info(f"{deployment.label}: {state.value}")
        if state != DeploymentState.COMMITTED:
            self._checkpoint(deployment)

    def _push(self, deployment: Deployment, name: str, compensator):
        deployment.undo.append((name, compensator))

    def _wait(self, task_ref, timeout: float, cancel_event: Optional[asyncio.Event] = None):
        return wait_for_task(self.hypervisor, task_ref, timeout, cancel_event,
                             poll_interval=self.config.TASK_POLL_INTERVAL_SECONDS)

    async def _run(self, deployment: Deployment) -> DeployResult:
        hw, custom, config = deployment.hw, deployment.custom, self.config
        self._checkpoint(deployment)

        # Validate
        customer = self.catalog.get_customer(deployment.customer_id)
        deployment.username = customer.username
        deployment.profile = guest_os.resolve(hw.os_name, hw.os_bitness)

        # Select placement
        snapshot = await run_in_threadpool(self.hypervisor.inventory)
        deployment.placement = selector.select(snapshot, hw, config.NETWORK_SUBNETS)
        self._advance(deployment, DeploymentState.SELECTED)

        # Reserve the IP and name in the catalog
        await self._reserve(deployment)
        self._advance(deployment, DeploymentState.TX_OPEN)

        # Build customization and clone
        await self._clone(deployment)
        self._advance(deployment, DeploymentState.CLONED)

        await self._power_on(deployment)
        self._advance(deployment, DeploymentState.POWERED_ON)

        await self._wait_for_ip(deployment)
        self._advance(deployment, DeploymentState.IP_READY)

        deployment.issued = await self.credentials.install(
            custom.ssh_mode, deployment.vm, deployment.vm_ref, deployment.profile
        )
        self._push(deployment, "wipe credentials", self._wipe_credentials)
        self._advance(deployment, DeploymentState.CREDENTIALED)

        await self._bootstrap(deployment)
        self._advance(deployment, DeploymentState.BOOTSTRAPPED)

        await self._route(deployment)
        self._advance(deployment, DeploymentState.ROUTED)

        vm = self.catalog.mark_running(deployment.vm.id, deployment.issued.ssh_info, deployment.binding)
        deployment.undo.clear()
        self._advance(deployment, DeploymentState.COMMITTED)

        return DeployResult(
            vm_id=vm.id,
            inventory_path=vm.inventory_path,
            ssh_mode=vm.ssh_mode,
            route_url=deployment.binding.route_url if deployment.binding else None,
            root_password=deployment.issued.root_password,
        )

    async def _reserve(self, deployment: Deployment):
        hw, custom, place = deployment.hw, deployment.custom, deployment.placement
        vm_id = new_vm_id()
        vm = VirtualMachine(
            id=vm_id,
            owner_id=deployment.customer_id,
            name=custom.vm_name,
            inventory_path=f"{place.folder_path}/{custom.vm_name}-{vm_id}",
            datacenter_ref=place.datacenter_ref,
            datacenter_name=place.datacenter_name,
            folder_ref=place.folder_ref,
            cluster_ref=place.cluster_ref,
            datastore_ref=place.datastore_ref,
            network_ref=place.network_ref,
            network_ip=hw.network_ip,
            hostname=hw.hostname,
            os_name=deployment.profile.name,
            os_bitness=deployment.profile.bitness,
            ssh_mode=custom.ssh_mode,
        )
        deployment.vm = self.catalog.reserve(vm)
        self._push(deployment, "release catalog row", self._release)

    async def _clone(self, deployment: Deployment):
        hw, profile, place, vm = deployment.hw, deployment.profile, deployment.placement, deployment.vm
        template_ref, devices = await run_in_threadpool(
            self.hypervisor.find_template, place.datacenter_name, profile.template
        )
        config_spec = customization.build_config_spec(hw, profile, place, devices)
        guest_spec = customization.network_customization(
            hw, profile, self.config.DEFAULT_DOMAIN, self.config.DEFAULT_DNS
        )

        # Pushed before the clone starts: a cancelled clone may still leave a VM behind
        self._push(deployment, "destroy VM", self._destroy_vm)
        task_ref = await run_in_threadpool(
            self.hypervisor.clone_vm,
            template_ref,
            vm.inventory_path.rsplit("/", 1)[-1],
            place.folder_ref,
            place.resource_pool_ref,
            place.datastore_ref,
            config_spec,
            guest_spec,
        )
        status = await self._wait(
            task_ref, deployment.deadline.cap(self.config.CLONE_TIMEOUT_SECONDS), deployment.cancel_event
        )
        deployment.vm_ref = status.result_ref or await run_in_threadpool(
            self.hypervisor.vm_by_path, vm.inventory_path
        )

    async def _power_on(self, deployment: Deployment):
        task_ref = await run_in_threadpool(self.hypervisor.power_on, deployment.vm_ref)
        self._push(deployment, "power off VM", self._power_off)
        await self._wait(
            task_ref, deployment.deadline.cap(self.config.CONTROL_TIMEOUT_SECONDS), deployment.cancel_event
        )

    async def _wait_for_ip(self, deployment: Deployment):
        wanted = deployment.hw.network_ip
        timeout = deployment.deadline.cap(self.config.IP_WAIT_TIMEOUT_SECONDS)
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + timeout

        while True:
            ips = await run_in_threadpool(self.hypervisor.guest_ips, deployment.vm_ref)
            if wanted in ips:
                return
            remaining = give_up_at - loop.time()
            if remaining <= 0:
                raise Timeout(f"Guest did not report {wanted} within {timeout:.0f}s")
            try:
                await asyncio.wait_for(
                    deployment.cancel_event.wait(), min(self.config.IP_POLL_INTERVAL_SECONDS, remaining)
                )
            except asyncio.TimeoutError:
                pass
            self._checkpoint(deployment)

    async def _bootstrap(self, deployment: Deployment):
        commands = command_source(
            deployment.profile, self.config.DATACENTER_DOCKER_VERSION
        ).commands_for(deployment.custom.pre_installed_tools)
        if not commands:
            return
        result = await run_in_threadpool(
            self.executor.execute,
            deployment.hw.network_ip,
            deployment.profile,
            deployment.issued.ssh,
            commands,
            deadline=deployment.deadline,
            cancel_event=deployment.cancel_event,
        )
        if not result.ok:
            raise BootstrapFailed(result.failed_command, result.error)

    async def _bounded(self, deployment: Deployment, operation: Awaitable, what: str):
        """Awaits `operation` until it finishes, the deployment is cancelled or its deadline passes."""
        work = asyncio.ensure_future(operation)
        cancelled = asyncio.ensure_future(deployment.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, timeout=deployment.deadline.remaining(), return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()
        if work in done:
            return work.result()
        await asyncio.wait({work})
        if deployment.cancel_event.is_set():
            raise Cancelled(f"Deployment cancelled during {what}")
        raise Timeout(f"Deployment deadline exceeded during {what}")

    async def _route(self, deployment: Deployment):
        vm = deployment.vm
        edge_host = await run_in_threadpool(self.hypervisor.vm_host, deployment.vm_ref)
        name = service_name(deployment.username, vm.id)
        # Pushed first: a failed registration may leave the service without its route
        self._push(deployment, "deregister route", self._deregister_route(edge_host, name))
        deployment.binding = await self._bounded(deployment, self.edge.register(
            edge_host,
            vm.id,
            name,
            deployment.hw.network_ip,
            deployment.hw.hostname,
            {"X-VM-Id": vm.id},
        ), "edge registration")

    # Compensators, each safe to run when its step only half happened

    def _deregister_route(self, edge_host: str, name: str):
        async def deregister(deployment: Deployment):
            await self.edge.deregister(edge_host, name)
        return deregister

    async def _wipe_credentials(self, deployment: Deployment):
        await self.credentials.wipe(deployment.issued, deployment.vm, deployment.vm_ref, deployment.profile)

    async def _power_off(self, deployment: Deployment):
        state = await run_in_threadpool(self.hypervisor.power_state, deployment.vm_ref)
        if state == POWERED_OFF:
            return
        task_ref = await run_in_threadpool(self.hypervisor.power_off, deployment.vm_ref)
        await self._wait(task_ref, self.config.CONTROL_TIMEOUT_SECONDS)

    async def _destroy_vm(self, deployment: Deployment):
        vm_ref = deployment.vm_ref or await run_in_threadpool(
            self.hypervisor.vm_by_path, deployment.vm.inventory_path
        )
        if vm_ref is None:
            return
        state = await run_in_threadpool(self.hypervisor.power_state, vm_ref)
        if state != POWERED_OFF:
            task_ref = await run_in_threadpool(self.hypervisor.power_off, vm_ref)
            await self._wait(task_ref, self.config.CONTROL_TIMEOUT_SECONDS)
        task_ref = await run_in_threadpool(self.hypervisor.destroy, vm_ref)
        await self._wait(task_ref, self.config.CONTROL_TIMEOUT_SECONDS)

    async def _release(self, deployment: Deployment):
        self.catalog.release(deployment.vm.id)

    async def _compensate(self, deployment: Deployment) -> List[str]:
        errors = []
        while deployment.undo:
            name, compensator = deployment.undo.pop()
            logger.info(f"{deployment.label}: compensating ({name})")
            try:
                await compensator(deployment)
            except Exception as e:
                error = wrap(e)
                logger.error(f"{deployment.label}: compensation '{name}' failed: {error.kind}: {error.detail}")
                errors.append(f"{name}: {error.kind}: {error.detail}")
        return errors

    async def _fail(self, deployment: Deployment, error: ControlPlaneError):
        failed_in = deployment.state
        logger.error(f"{deployment.label} failed in {failed_in.value}: {error.kind}: {error.detail}")
        compensation_errors = await self._compensate(deployment)
        deployment.state = DeploymentState.FAILED

        if deployment.vm is None:
            # Nothing was ever written
            return
        audit = DeploymentAudit(
            deployment_id=deployment.id,
            customer_id=deployment.customer_id,
            vm_id=deployment.vm.id,
            vm_name=deployment.custom.vm_name,
            network_ip=deployment.hw.network_ip,
            last_state=failed_in.value,
            error_kind=error.kind,
            error_detail=error.detail,
            compensation_errors=compensation_errors,
            cancelled=isinstance(error, Cancelled),
        )
        try:
            self.catalog.record_audit(audit)
        except Exception:
            logger.exception(f"{deployment.label}: could not write audit row")
