from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field
from typing import Dict

class RouteBinding(SQLModel, table=True):
    __tablename__ = "route_bindings"

    vm_id: str = Field(foreign_key="virtual_machines.id", primary_key=True, max_length=32)
    service_name: str = Field(unique=True, max_length=255)
    route_url: str = Field(max_length=512)
    upstream_host: str = Field(max_length=255)
    # Host whose edge proxy carries the route
    edge_host: str = Field(max_length=255)
    headers: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
