import uuid
from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum

class VMState(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    DESTROYED = "destroyed"

class SshMode(str, Enum):
    ROOT_PASSWORD = "rootPassword"
    CERTIFICATE = "certificate"

# Allowed catalog state transitions
TRANSITIONS = {
    VMState.PROVISIONING: {VMState.RUNNING, VMState.FAILED},
    VMState.RUNNING: {VMState.STOPPED, VMState.DESTROYED},
    VMState.STOPPED: {VMState.RUNNING, VMState.DESTROYED},
    VMState.FAILED: {VMState.DESTROYED},
    VMState.DESTROYED: set(),
}

# Enums are stored by member name
_LIVE = text("state != 'DESTROYED'")

def new_vm_id() -> str:
    return uuid.uuid4().hex

def utc_now() -> datetime:
    # Timestamp columns only accept timezone-aware values
    return datetime.now(timezone.utc)

class VirtualMachine(SQLModel, table=True):
    __tablename__ = "virtual_machines"
    __table_args__ = (
        Index("ux_vm_network_ip_live", "network_ip", unique=True,
              sqlite_where=_LIVE, postgresql_where=_LIVE),
        Index("ux_vm_owner_name_live", "owner_id", "name", unique=True,
              sqlite_where=_LIVE, postgresql_where=_LIVE),
    )

    id: str = Field(default_factory=new_vm_id, primary_key=True, max_length=32)
    owner_id: int = Field(foreign_key="customers.id", index=True)
    name: str = Field(max_length=255)
    inventory_path: str = Field(unique=True, max_length=512)

    # Placement (managed object ids)
    datacenter_ref: str = Field(max_length=64)
    datacenter_name: str = Field(max_length=255)
    folder_ref: str = Field(max_length=64)
    cluster_ref: str = Field(max_length=64)
    datastore_ref: str = Field(max_length=64)
    network_ref: str = Field(max_length=64)

    network_ip: str = Field(max_length=45)
    hostname: str = Field(max_length=63)
    os_name: str = Field(max_length=64)
    os_bitness: int = Field(default=64)
    ssh_mode: SshMode = Field(default=SshMode.CERTIFICATE)

    state: VMState = Field(default=VMState.PROVISIONING, index=True)
    created_at: datetime = Field(default_factory=utc_now)
