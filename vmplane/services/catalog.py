import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, delete, select

from vmplane.core.exceptions import Conflict, DuplicateIp, DuplicateName, NotFound
from vmplane.models.audit import DeploymentAudit
from vmplane.models.customer import Customer
from vmplane.models.route_binding import RouteBinding
from vmplane.models.ssh_info import SshInfo
from vmplane.models.vm import TRANSITIONS, VirtualMachine, VMState

logger = logging.getLogger(__name__)


class VMCatalog:
    """Durable record of customers, their VMs and each VM's SSH material and edge binding."""

    def __init__(self, engine):
        self.engine = engine

    @contextmanager
    def transaction(self):
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Customers

    def create_customer(self, username: str, email: str, password_hash: str) -> Customer:
        try:
            with self.transaction() as session:
                taken = session.exec(
                    select(Customer).where((Customer.username == username) | (Customer.email == email))
                ).first()
                if taken:
                    raise Conflict("Username or email already registered")
                customer = Customer(username=username, email=email, password_hash=password_hash)
                session.add(customer)
                session.flush()
                session.refresh(customer)
        except IntegrityError:
            raise Conflict("Username or email already registered")
        logger.info(f"Customer {customer.username} created (ID: {customer.id})")
        return customer

    def get_customer(self, customer_id: int) -> Customer:
        with self.transaction() as session:
            customer = session.get(Customer, customer_id)
        if not customer:
            raise NotFound("Customer not found")
        return customer

    def get_customer_by_username(self, username: str) -> Optional[Customer]:
        with self.transaction() as session:
            return session.exec(select(Customer).where(Customer.username == username)).first()

    def update_password(self, customer_id: int, password_hash: str):
        with self.transaction() as session:
            customer = session.get(Customer, customer_id)
            if not customer:
                raise NotFound("Customer not found")
            customer.password_hash = password_hash
            session.add(customer)

    def delete_customer(self, customer_id: int):
        with self.transaction() as session:
            customer = session.get(Customer, customer_id)
            if not customer:
                raise NotFound("Customer not found")
            live = session.exec(
                select(VirtualMachine)
                .where(VirtualMachine.owner_id == customer_id)
                .where(VirtualMachine.state != VMState.DESTROYED)
            ).first()
            if live:
                raise Conflict("Customer still owns virtual machines, destroy them first")

            vm_ids = session.exec(select(VirtualMachine.id).where(VirtualMachine.owner_id == customer_id)).all()
            if vm_ids:
                session.exec(delete(SshInfo).where(SshInfo.vm_id.in_(vm_ids)))
                session.exec(delete(RouteBinding).where(RouteBinding.vm_id.in_(vm_ids)))
                session.exec(delete(VirtualMachine).where(VirtualMachine.id.in_(vm_ids)))
            session.delete(customer)
        logger.info(f"Customer {customer_id} deleted")

    # Virtual machines

    def _check_unique(self, session: Session, vm: VirtualMachine):
        live = VirtualMachine.state != VMState.DESTROYED
        if session.exec(select(VirtualMachine.id).where(VirtualMachine.network_ip == vm.network_ip).where(live)).first():
            raise DuplicateIp(f"IP address {vm.network_ip} is already in use")
        if session.exec(
            select(VirtualMachine.id)
            .where(VirtualMachine.owner_id == vm.owner_id)
            .where(VirtualMachine.name == vm.name)
            .where(live)
        ).first():
            raise DuplicateName(f"A VM named {vm.name} already exists")

    def reserve(self, vm: VirtualMachine) -> VirtualMachine:
        """
        Inserts `vm` in state provisioning and commits it, which holds its IP
        and name against concurrent deployments until it is released.
        """
        vm.state = VMState.PROVISIONING
        try:
            with self.transaction() as session:
                self._check_unique(session, vm)
                session.add(vm)
        except IntegrityError:
            # Lost a race against another insert; report which constraint
            with self.transaction() as session:
                self._check_unique(session, vm)
            raise Conflict(f"VM {vm.name} conflicts with an existing VM")
        logger.info(f"Reserved {vm.network_ip} for VM {vm.name} (ID: {vm.id})")
        return vm

    def release(self, vm_id: str):
        """Removes a reservation together with anything attached to it. Missing rows are ignored."""
        with self.transaction() as session:
            session.exec(delete(SshInfo).where(SshInfo.vm_id == vm_id))
            session.exec(delete(RouteBinding).where(RouteBinding.vm_id == vm_id))
            session.exec(delete(VirtualMachine).where(VirtualMachine.id == vm_id))
        logger.info(f"Released catalog row of VM {vm_id}")

    def get(self, vm_id: str) -> Optional[VirtualMachine]:
        with self.transaction() as session:
            return session.get(VirtualMachine, vm_id)

    def get_owned(self, vm_id: str, customer_id: int, include_destroyed: bool = False) -> VirtualMachine:
        # Someone else's VM looks exactly like a missing one
        vm = self.get(vm_id)
        if vm is None or vm.owner_id != customer_id:
            raise NotFound("VM not found")
        if vm.state == VMState.DESTROYED and not include_destroyed:
            raise NotFound("VM not found")
        return vm

    def list_owned(self, customer_id: int) -> List[VirtualMachine]:
        with self.transaction() as session:
            return list(session.exec(
                select(VirtualMachine)
                .where(VirtualMachine.owner_id == customer_id)
                .where(VirtualMachine.state != VMState.DESTROYED)
                .order_by(VirtualMachine.created_at)
            ).all())

    def _transition(self, vm: VirtualMachine, state: VMState):
        if state != vm.state and state not in TRANSITIONS[vm.state]:
            raise Conflict(f"VM {vm.id} cannot go from {vm.state.value} to {state.value}")
        vm.state = state

    def set_state(self, vm_id: str, state: VMState) -> VirtualMachine:
        with self.transaction() as session:
            vm = session.get(VirtualMachine, vm_id)
            if not vm:
                raise NotFound("VM not found")
            self._transition(vm, state)
            session.add(vm)
        return vm

    def mark_running(self, vm_id: str, ssh_info: SshInfo, binding: Optional[RouteBinding]) -> VirtualMachine:
        with self.transaction() as session:
            vm = session.get(VirtualMachine, vm_id)
            if not vm:
                raise NotFound("VM not found")
            self._transition(vm, VMState.RUNNING)
            session.add(vm)
            session.add(ssh_info)
            if binding is not None:
                session.add(binding)
        return vm

    def mark_destroyed(self, vm_id: str) -> VirtualMachine:
        with self.transaction() as session:
            vm = session.get(VirtualMachine, vm_id)
            if not vm:
                raise NotFound("VM not found")
            self._transition(vm, VMState.DESTROYED)
            session.add(vm)
            session.exec(delete(RouteBinding).where(RouteBinding.vm_id == vm_id))
            session.exec(delete(SshInfo).where(SshInfo.vm_id == vm_id))
        return vm

    def get_ssh_info(self, vm_id: str) -> Optional[SshInfo]:
        with self.transaction() as session:
            return session.get(SshInfo, vm_id)

    def replace_ssh_info(self, vm_id: str, ssh_info: SshInfo) -> SshInfo:
        """Swaps the stored access material of a VM for a newly issued set."""
        with self.transaction() as session:
            current = session.get(SshInfo, vm_id)
            if current is None:
                raise NotFound("No SSH access recorded for this VM")
            for name in ("mode", "username", "password_hash", "fingerprint", "public_cert", "private_key_encrypted"):
                setattr(current, name, getattr(ssh_info, name))
            session.add(current)
        return current

    def get_route_binding(self, vm_id: str) -> Optional[RouteBinding]:
        with self.transaction() as session:
            return session.get(RouteBinding, vm_id)

    # Audit trail

    def record_audit(self, audit: DeploymentAudit) -> DeploymentAudit:
        # Own session: must land even though the deployment's writes were undone
        with self.transaction() as session:
            session.add(audit)
        return audit

    def list_audit(self, customer_id: Optional[int] = None) -> List[DeploymentAudit]:
        with self.transaction() as session:
            query = select(DeploymentAudit).order_by(DeploymentAudit.timestamp)
            if customer_id is not None:
                query = query.where(DeploymentAudit.customer_id == customer_id)
            return list(session.exec(query).all())

    def purge_audit(self, retention_days: int, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        with self.transaction() as session:
            result = session.exec(delete(DeploymentAudit).where(DeploymentAudit.timestamp < cutoff))
            count = result.rowcount or 0
        if count:
            logger.info(f"Purged {count} audit rows older than {retention_days} days")
        return count
