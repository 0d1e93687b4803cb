from sqlmodel import SQLModel, Field
from typing import Optional
from .vm import SshMode

class SshInfo(SQLModel, table=True):
    """
    Guest access material of a VM. Exactly one of the two groups is filled:
    rootPassword -> username + password_hash,
    certificate  -> fingerprint + public_cert + private_key_encrypted.
    """
    __tablename__ = "ssh_info"

    vm_id: str = Field(foreign_key="virtual_machines.id", primary_key=True, max_length=32)
    mode: SshMode

    username: Optional[str] = Field(default=None, max_length=64)
    password_hash: Optional[str] = Field(default=None, max_length=255)

    fingerprint: Optional[str] = Field(default=None, max_length=128)
    public_cert: Optional[str] = None
    # Fernet token, see core.security.KeyVault
    private_key_encrypted: Optional[str] = None
