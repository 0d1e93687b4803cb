import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, Query, Request, status

from vmplane.core.exceptions import NotFound
from vmplane.models.customer import Customer
from vmplane.models.vm import SshMode
from vmplane.routers.customer import ensure_self, get_catalog, get_current_customer
from vmplane.schemas import DeployRequest, DeployResponse, SshCertRead, VMRead
from vmplane.services.health import vm_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vm", tags=["vm"])

# How often a running deployment checks whether its client went away
DISCONNECT_POLL_SECONDS = 1.0


def get_orchestrator(request: Request):
    return request.app.state.orchestrator


def get_lifecycle(request: Request):
    return request.app.state.lifecycle


def owner(customer_id: int = Query(alias="customerId"),
          customer: Customer = Depends(get_current_customer)) -> Customer:
    ensure_self(customer_id, customer)
    return customer


@router.post("/deploy", response_model=DeployResponse, response_model_exclude_none=True,
             status_code=status.HTTP_201_CREATED)
async def deploy_vm(data: DeployRequest, request: Request,
                    customer: Customer = Depends(get_current_customer),
                    orchestrator=Depends(get_orchestrator)):
    ensure_self(data.customer_id, customer)
    cancel = asyncio.Event()
    task = asyncio.create_task(orchestrator.deploy(customer.id, data.hardware, data.custom, cancel))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                break
            if not cancel.is_set() and await request.is_disconnected():
                logger.warning(f"Client went away, cancelling deployment of {data.custom.vm_name}")
                cancel.set()
    except asyncio.CancelledError:
        cancel.set()
        raise

    result = task.result()
    return DeployResponse(vmId=result.vm_id, sshMode=result.ssh_mode, rootPassword=result.root_password)


@router.post("/start")
async def start_vm(vm_id: str = Query(alias="vmId"), customer: Customer = Depends(owner),
                   lifecycle=Depends(get_lifecycle)):
    return await lifecycle.start(vm_id, customer.id)


@router.post("/reboot")
async def reboot_vm(vm_id: str = Query(alias="vmId"), customer: Customer = Depends(owner),
                    lifecycle=Depends(get_lifecycle)):
    return await lifecycle.reboot(vm_id, customer.id)


@router.post("/shutdown")
async def shutdown_vm(vm_id: str = Query(alias="vmId"), soft: bool = Query(default=False),
                      customer: Customer = Depends(owner), lifecycle=Depends(get_lifecycle)):
    return await lifecycle.shutdown(vm_id, customer.id, soft=soft)


@router.delete("/remove")
async def remove_vm(vm_id: str = Query(alias="vmId"), customer: Customer = Depends(owner),
                    lifecycle=Depends(get_lifecycle)):
    return await lifecycle.destroy(vm_id, customer.id)


@router.get("/health")
async def health(request: Request, vm_id: str = Query(alias="vmId"), customer: Customer = Depends(owner),
                 catalog=Depends(get_catalog)):
    vm = catalog.get_owned(vm_id, customer.id)
    return await vm_health(request.app.state.hypervisor, vm.inventory_path)


@router.get("/ssh/cert", response_model=SshCertRead)
async def ssh_certificate(request: Request, vm_id: str = Query(alias="vmId"),
                          customer: Customer = Depends(owner), catalog=Depends(get_catalog)):
    vm = catalog.get_owned(vm_id, customer.id)
    info = catalog.get_ssh_info(vm.id)
    if info is None or info.mode != SshMode.CERTIFICATE or not info.public_cert:
        raise NotFound("No certificate issued for this VM")
    private_key = request.app.state.vault.decrypt(info.private_key_encrypted).decode("ascii")
    return SshCertRead(pem=info.public_cert, fingerprint=info.fingerprint, privateKey=private_key)


@router.put("/ssh/recover", response_model=SshCertRead)
async def rotate_ssh_key(vm_id: str = Query(alias="vmId"), customer: Customer = Depends(owner),
                         lifecycle=Depends(get_lifecycle)):
    return await lifecycle.rotate_ssh_key(vm_id, customer.id)


def _read(vm, binding) -> VMRead:
    data = VMRead.model_validate(vm)
    data.route_url = binding.route_url if binding else None
    return data


@router.get("/list", response_model=List[VMRead])
async def list_vms(customer: Customer = Depends(owner), catalog=Depends(get_catalog)):
    return [_read(vm, catalog.get_route_binding(vm.id)) for vm in catalog.list_owned(customer.id)]


@router.get("/get", response_model=VMRead)
async def get_vm(vm_id: str = Query(alias="vmId"), customer: Customer = Depends(owner),
                 catalog=Depends(get_catalog)):
    vm = catalog.get_owned(vm_id, customer.id)
    return _read(vm, catalog.get_route_binding(vm.id))
