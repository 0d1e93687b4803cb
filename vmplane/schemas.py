import ipaddress
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vmplane.models.vm import SshMode, VMState

HOSTNAME_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,100}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,62}$")


class Tool(str, Enum):
    DOCKER = "Docker"
    DOCKER_COMPOSE = "DockerCompose"
    PODMAN = "Podman"
    VIRTUALBOX = "VirtualBox"


def _check_ipv4(value: str, field: str) -> str:
    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        raise ValueError(f"{field} is not a valid IPv4 address")


class HardwareSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cpu_count: int = Field(alias="cpuCount", ge=1)
    memory_mb: int = Field(alias="memoryMB", ge=512)
    disk_capacity_kb: int = Field(alias="diskCapacityKB", gt=0)
    os_name: str = Field(alias="osName")
    os_bitness: int = Field(default=64, alias="osBitness")
    network_ip: str = Field(alias="networkIp")
    netmask: str = Field(default="255.255.255.0")
    gateway: str
    hostname: str

    @field_validator("os_name")
    @classmethod
    def normalize_os_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("network_ip", "gateway")
    @classmethod
    def validate_ip(cls, value: str, info) -> str:
        return _check_ipv4(value, info.field_name)

    @field_validator("netmask")
    @classmethod
    def validate_netmask(cls, value: str) -> str:
        try:
            ipaddress.IPv4Network(f"0.0.0.0/{value}")
        except ValueError:
            raise ValueError("netmask is not a valid IPv4 subnet mask")
        return value

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, value: str) -> str:
        if not HOSTNAME_RE.match(value):
            raise ValueError("hostname must be a valid DNS label")
        return value.lower()

    @model_validator(mode="after")
    def gateway_in_subnet(self):
        network = ipaddress.IPv4Network(f"{self.network_ip}/{self.netmask}", strict=False)
        if ipaddress.IPv4Address(self.gateway) not in network:
            raise ValueError("gateway is outside the subnet of networkIp")
        return self

    @property
    def subnet(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(f"{self.network_ip}/{self.netmask}", strict=False)


class CustomSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    vm_name: str = Field(alias="vmName")
    pre_installed_tools: List[Tool] = Field(default_factory=list, alias="preInstalledTools")
    ssh_mode: SshMode = Field(default=SshMode.CERTIFICATE, alias="sshMode")

    @field_validator("vm_name")
    @classmethod
    def validate_vm_name(cls, value: str) -> str:
        if not VM_NAME_RE.match(value):
            raise ValueError("vmName must be 1-63 characters of letters, digits, '-' or '_'")
        return value

    @field_validator("pre_installed_tools")
    @classmethod
    def dedupe_tools(cls, value: List[Tool]) -> List[Tool]:
        seen = []
        for tool in value:
            if tool not in seen:
                seen.append(tool)
        return seen


class DeployRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: int = Field(alias="customerId")
    hardware: HardwareSpec = Field(alias="hardwareSpec")
    custom: CustomSpec = Field(alias="customSpec")


class DeployResponse(BaseModel):
    vmId: str
    sshMode: SshMode
    # Only present in rootPassword mode, returned once and never stored
    rootPassword: Optional[str] = None


class Token(BaseModel):
    token: str


class LoginRequest(BaseModel):
    username: str
    password: str


class CustomerCreate(BaseModel):
    username: str
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        if not USERNAME_RE.match(value):
            raise ValueError("username must be 3-100 characters of letters, digits, '_', '.' or '-'")
        return value

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        if not EMAIL_RE.match(value):
            raise ValueError("email is not valid")
        return value.lower()

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        return value


class CustomerRead(BaseModel):
    id: int
    username: str
    email: str
    model_config = ConfigDict(from_attributes=True)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        return value


class VMRead(BaseModel):
    id: str
    name: str
    owner_id: int
    inventory_path: str
    datacenter_name: str
    network_ip: str
    hostname: str
    os_name: str
    os_bitness: int
    ssh_mode: SshMode
    state: VMState
    route_url: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class SshCertRead(BaseModel):
    pem: str
    fingerprint: str
    privateKey: str


class SuggestionItem(BaseModel):
    id: str
    name: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SuggestionList(BaseModel):
    items: List[SuggestionItem]
