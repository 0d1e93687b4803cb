import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from fastapi.concurrency import run_in_threadpool
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from vmplane.core.exceptions import (
    Conflict, ControlPlaneError, CredentialsInstallFailed, HypervisorUnavailable, Timeout,
)
from vmplane.core.security import KeyVault, get_password_hash
from vmplane.models.ssh_info import SshInfo
from vmplane.models.vm import SshMode, VirtualMachine
from vmplane.services.guest_os import OSProfile

logger = logging.getLogger(__name__)

LINUX_SHELL = "/bin/sh"
WINDOWS_SHELL = r"C:\Windows\System32\WindowsPowerShell\v1.0\powershell.exe"
LINUX_AUTHORIZED_KEYS = "/root/.ssh/authorized_keys"
WINDOWS_AUTHORIZED_KEYS = r"C:\ProgramData\ssh\administrators_authorized_keys"

GUEST_COMMAND_TIMEOUT = 60


@dataclass
class GuestCredentials:
    """What the SSH layer logs in with."""
    username: str
    password: Optional[str] = None
    private_key_pem: Optional[str] = None

    def __repr__(self):
        return f"GuestCredentials(username={self.username!r}, password=******, private_key_pem=******)"


@dataclass
class IssuedCredentials:
    mode: SshMode
    ssh: GuestCredentials
    # Not yet persisted, written by the orchestrator together with the running state
    ssh_info: SshInfo
    # Plaintext root password, handed back to the customer once
    root_password: Optional[str] = field(default=None, repr=False)
    # Certificate mode only
    private_key: Optional[rsa.RSAPrivateKey] = field(default=None, repr=False)
    csr_pem: Optional[str] = None


def admin_user(profile: OSProfile) -> str:
    return "Administrator" if profile.is_windows else "root"


def key_comment(vm_id: str) -> str:
    return f"vmplane-{vm_id}"


def fingerprint(cert_pem: str) -> str:
    cert = x509.load_pem_x509_certificate(cert_pem.encode("ascii"))
    return "SHA256:" + cert.fingerprint(hashes.SHA256()).hex(":").upper()


def build_csr(common_name: str):
    """Returns (private key, CSR in PEM) for a fresh RSA key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(key, hashes.SHA256())
    )
    return key, csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


class CredentialStrategy(ABC):
    mode: SshMode

    def __init__(self, hypervisor, vault: KeyVault, guest_user: str, guest_password: str):
        self.hypervisor = hypervisor
        self.vault = vault
        self.guest_user = guest_user
        self.guest_password = guest_password

    def _guest_run(self, vm_ref: str, profile: OSProfile, script: str, username: str = None, password: str = None):
        program = WINDOWS_SHELL if profile.is_windows else LINUX_SHELL
        arguments = f'-NoProfile -Command "{script}"' if profile.is_windows else f"-c '{script}'"
        result = self.hypervisor.run_in_guest(
            vm_ref,
            username or self.guest_user,
            password if password is not None else self.guest_password,
            program,
            arguments,
            timeout=GUEST_COMMAND_TIMEOUT,
        )
        if result.exit_code != 0:
            raise CredentialsInstallFailed(f"Guest command exited with code {result.exit_code}")

    @abstractmethod
    def prepare(self, vm: VirtualMachine, profile: OSProfile) -> IssuedCredentials:
        """Generates the credential material. Runs once per deployment."""

    @abstractmethod
    def install(self, issued: IssuedCredentials, vm: VirtualMachine, vm_ref: str, profile: OSProfile):
        """Installs `issued` in the guest. May be retried."""

    @abstractmethod
    def wipe(self, issued: IssuedCredentials, vm: VirtualMachine, vm_ref: str, profile: OSProfile):
        """Removes what `install` put in the guest."""


class RootPasswordCredentials(CredentialStrategy):
    mode = SshMode.ROOT_PASSWORD

    def prepare(self, vm, profile):
        # 16 random bytes, urlsafe: no shell quoting needed
        password = secrets.token_urlsafe(16)
        username = admin_user(profile)
        ssh_info = SshInfo(
            vm_id=vm.id,
            mode=self.mode,
            username=username,
            password_hash=get_password_hash(password),
        )
        return IssuedCredentials(
            mode=self.mode,
            ssh=GuestCredentials(username=username, password=password),
            ssh_info=ssh_info,
            root_password=password,
        )

    def _auth_password(self, issued: IssuedCredentials) -> str:
        # Once changed, the template password no longer works for the same account
        if self.guest_user == issued.ssh.username:
            return issued.ssh.password
        return self.guest_password

    def install(self, issued, vm, vm_ref, profile):
        password = issued.ssh.password
        if profile.is_windows:
            script = f"net user {issued.ssh.username} {password}"
        else:
            script = (
                f"echo {issued.ssh.username}:{password} | chpasswd"
                " && sed -i -E \"s/^#?PermitRootLogin.*/PermitRootLogin yes/\" /etc/ssh/sshd_config"
                " && (systemctl reload sshd || systemctl reload ssh || true)"
            )
        self._guest_run(vm_ref, profile, script)
        logger.info(f"Root password installed on VM {vm.id}")

    def wipe(self, issued, vm, vm_ref, profile):
        script = f"net user {issued.ssh.username} /active:no" if profile.is_windows \
            else f"passwd -l {issued.ssh.username}"
        self._guest_run(vm_ref, profile, script, password=self._auth_password(issued))
        logger.info(f"Root password locked on VM {vm.id}")


class CertificateCredentials(CredentialStrategy):
    mode = SshMode.CERTIFICATE

    def prepare(self, vm, profile):
        key, csr_pem = build_csr(f"{vm.name}-{vm.id}")
        private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        ).decode("ascii")
        username = admin_user(profile)
        ssh_info = SshInfo(
            vm_id=vm.id,
            mode=self.mode,
            username=username,
            private_key_encrypted=self.vault.encrypt(private_pem.encode("ascii")),
        )
        return IssuedCredentials(
            mode=self.mode,
            ssh=GuestCredentials(username=username, private_key_pem=private_pem),
            ssh_info=ssh_info,
            private_key=key,
            csr_pem=csr_pem,
        )

    def _place(self, key: rsa.RSAPrivateKey, cert_pem: str, vm, vm_ref, profile):
        public_line = key.public_key().public_bytes(
            serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
        ).decode("ascii") + f" {key_comment(vm.id)}\n"

        if profile.is_windows:
            keys_path = WINDOWS_AUTHORIZED_KEYS
            cert_path = rf"C:\ProgramData\ssh\{key_comment(vm.id)}.pem"
            prepare = r"New-Item -ItemType Directory -Force -Path C:\ProgramData\ssh | Out-Null"
            finish = f"icacls {keys_path} /inheritance:r /grant Administrators:F /grant SYSTEM:F"
        else:
            keys_path = LINUX_AUTHORIZED_KEYS
            cert_path = f"/etc/ssl/certs/{key_comment(vm.id)}.pem"
            prepare = "mkdir -p /root/.ssh && chmod 700 /root/.ssh"
            finish = f"chmod 600 {keys_path}"

        # authorized_keys is rewritten whole, so any earlier key of this VM is gone
        self._guest_run(vm_ref, profile, prepare)
        self.hypervisor.upload_to_guest(vm_ref, self.guest_user, self.guest_password, keys_path,
                                        public_line.encode("ascii"))
        self.hypervisor.upload_to_guest(vm_ref, self.guest_user, self.guest_password, cert_path,
                                        cert_pem.encode("ascii"))
        self._guest_run(vm_ref, profile, finish)

    def install(self, issued, vm, vm_ref, profile):
        cert_pem = self.hypervisor.sign_csr(issued.csr_pem)
        self._place(issued.private_key, cert_pem, vm, vm_ref, profile)
        issued.ssh_info.public_cert = cert_pem
        issued.ssh_info.fingerprint = fingerprint(cert_pem)
        logger.info(f"Certificate {issued.ssh_info.fingerprint} installed on VM {vm.id}")

    def restore(self, ssh_info: SshInfo, vm: VirtualMachine, vm_ref: str, profile: OSProfile):
        """Puts a previously issued key and certificate back in the guest."""
        private_pem = self.vault.decrypt(ssh_info.private_key_encrypted)
        key = serialization.load_pem_private_key(private_pem, password=None)
        self._place(key, ssh_info.public_cert, vm, vm_ref, profile)
        logger.info(f"Certificate {ssh_info.fingerprint} restored on VM {vm.id}")

    def wipe(self, issued, vm, vm_ref, profile):
        if profile.is_windows:
            script = f"Remove-Item -Force {WINDOWS_AUTHORIZED_KEYS}"
        else:
            script = f"sed -i \"/{key_comment(vm.id)}/d\" {LINUX_AUTHORIZED_KEYS}"
        self._guest_run(vm_ref, profile, script)
        logger.info(f"Certificate key removed from VM {vm.id}")


class CredentialsManager:
    """Issues and installs guest credentials in the mode chosen for the VM."""

    def __init__(self, hypervisor, vault: KeyVault, guest_user: str, guest_password: str,
                 attempts: int = 3, min_wait: float = 0.1, max_wait: float = 0.8):
        self.attempts = attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self._strategies = {
            SshMode.ROOT_PASSWORD: RootPasswordCredentials(hypervisor, vault, guest_user, guest_password),
            SshMode.CERTIFICATE: CertificateCredentials(hypervisor, vault, guest_user, guest_password),
        }

    def strategy(self, mode: SshMode) -> CredentialStrategy:
        return self._strategies[SshMode(mode)]

    async def install(self, mode: SshMode, vm: VirtualMachine, vm_ref: str, profile: OSProfile) -> IssuedCredentials:
        strategy = self.strategy(mode)
        issued = await run_in_threadpool(strategy.prepare, vm, profile)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.attempts),
                wait=wait_random_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
                retry=retry_if_exception_type((CredentialsInstallFailed, HypervisorUnavailable, Timeout)),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    await run_in_threadpool(strategy.install, issued, vm, vm_ref, profile)
        except CredentialsInstallFailed:
            raise
        except ControlPlaneError as e:
            raise CredentialsInstallFailed(f"Installing {SshMode(mode).value} credentials failed: {e.detail}")
        return issued

    async def wipe(self, issued: IssuedCredentials, vm: VirtualMachine, vm_ref: str, profile: OSProfile):
        await run_in_threadpool(self.strategy(issued.mode).wipe, issued, vm, vm_ref, profile)

    async def rotate(self, current: SshInfo, vm: VirtualMachine, vm_ref: str, profile: OSProfile) -> IssuedCredentials:
        """
        Issues a new certificate key for a running VM. The new key replaces
        the old one in the guest; if it cannot be installed the old key is put back.
        """
        if current is None or current.mode != SshMode.CERTIFICATE:
            raise Conflict(f"VM {vm.id} does not use certificate access")
        try:
            issued = await self.install(SshMode.CERTIFICATE, vm, vm_ref, profile)
        except CredentialsInstallFailed:
            try:
                await run_in_threadpool(self.strategy(SshMode.CERTIFICATE).restore, current, vm, vm_ref, profile)
            except ControlPlaneError as e:
                logger.error(f"Could not restore the previous key on VM {vm.id}: {e.detail}")
            raise
        logger.info(f"Certificate key of VM {vm.id} rotated to {issued.ssh_info.fingerprint}")
        return issued
