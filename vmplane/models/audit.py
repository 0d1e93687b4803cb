from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field
from typing import List, Optional
from datetime import datetime
from .vm import utc_now

class DeploymentAudit(SQLModel, table=True):
    """Immutable record of a failed or cancelled deployment."""
    __tablename__ = "deployment_audit"

    id: Optional[int] = Field(default=None, primary_key=True)
    deployment_id: str = Field(index=True, max_length=32)
    customer_id: int = Field(index=True)
    # No foreign key: the VM row is usually gone by the time this is written
    vm_id: Optional[str] = Field(default=None, max_length=32)
    vm_name: str = Field(max_length=255)
    network_ip: Optional[str] = Field(default=None, max_length=45)
    last_state: str = Field(max_length=32)
    error_kind: str = Field(max_length=64)
    error_detail: Optional[str] = None
    compensation_errors: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    cancelled: bool = Field(default=False)
    timestamp: datetime = Field(default_factory=utc_now, index=True)
