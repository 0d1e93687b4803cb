"""Tests for vmplane.services.credentials."""
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from fakes import make_vm
from vmplane.core.exceptions import Conflict, CredentialsInstallFailed
from vmplane.core.security import verify_password
from vmplane.models.vm import SshMode
from vmplane.services import guest_os
from vmplane.services.credentials import GuestCredentials, fingerprint, key_comment

UBUNTU = guest_os.resolve("ubuntu", 64)
WINDOWS = guest_os.resolve("windows", 64)


@pytest.fixture
def vm(catalog, alice):
    return catalog.reserve(make_vm(alice.id))


@pytest.fixture
def vm_ref(hypervisor):
    hypervisor.vms["vm-1"] = {"path": "/DC1/vm/web01", "power": "poweredOn", "ip": "10.0.0.42", "host": "esx-01"}
    return "vm-1"


class TestRootPassword:
    async def test_install_sets_password(self, credentials, hypervisor, vm, vm_ref):
        issued = await credentials.install(SshMode.ROOT_PASSWORD, vm, vm_ref, UBUNTU)
        assert issued.root_password
        assert issued.ssh.username == "root"
        assert issued.ssh_info.mode == SshMode.ROOT_PASSWORD
        assert verify_password(issued.root_password, issued.ssh_info.password_hash)
        assert issued.ssh_info.private_key_encrypted is None

        [run] = hypervisor.guest_runs
        assert run["program"] == "/bin/sh"
        assert run["username"] == "root"
        assert run["password"] == "template-pass"
        assert f"root:{issued.root_password} | chpasswd" in run["arguments"]

    async def test_passwords_are_unique(self, credentials, vm, vm_ref):
        first = await credentials.install(SshMode.ROOT_PASSWORD, vm, vm_ref, UBUNTU)
        second = await credentials.install(SshMode.ROOT_PASSWORD, vm, vm_ref, UBUNTU)
        assert first.root_password != second.root_password

    async def test_windows_uses_administrator(self, credentials, hypervisor, vm, vm_ref):
        issued = await credentials.install(SshMode.ROOT_PASSWORD, vm, vm_ref, WINDOWS)
        assert issued.ssh.username == "Administrator"
        assert hypervisor.guest_runs[0]["program"].endswith("powershell.exe")
        assert "net user Administrator" in hypervisor.guest_runs[0]["arguments"]

    async def test_wipe_locks_with_new_password(self, credentials, hypervisor, vm, vm_ref):
        issued = await credentials.install(SshMode.ROOT_PASSWORD, vm, vm_ref, UBUNTU)
        await credentials.wipe(issued, vm, vm_ref, UBUNTU)
        wipe = hypervisor.guest_runs[-1]
        assert "passwd -l root" in wipe["arguments"]
        # The template password stopped working for root once it was changed
        assert wipe["password"] == issued.root_password

    def test_secrets_not_in_repr(self):
        creds = GuestCredentials(username="root", password="hunter2", private_key_pem="-----BEGIN")
        assert "hunter2" not in repr(creds)
        assert "BEGIN" not in repr(creds)


class TestRetries:
    async def test_transient_failures_are_retried(self, credentials, hypervisor, vm, vm_ref):
        hypervisor.guest_exit_codes = [1, 1, 0]
        issued = await credentials.install(SshMode.ROOT_PASSWORD, vm, vm_ref, UBUNTU)
        assert len(hypervisor.guest_runs) == 3
        assert issued.root_password

    async def test_gives_up_after_three_attempts(self, credentials, hypervisor, vm, vm_ref):
        hypervisor.guest_exit_codes = [1, 1, 1, 0]
        with pytest.raises(CredentialsInstallFailed):
            await credentials.install(SshMode.ROOT_PASSWORD, vm, vm_ref, UBUNTU)
        assert len(hypervisor.guest_runs) == 3

    async def test_hypervisor_errors_are_wrapped(self, credentials, vm):
        # vm-404 is unknown to the hypervisor
        with pytest.raises(CredentialsInstallFailed, match="rootPassword"):
            await credentials.install(SshMode.ROOT_PASSWORD, vm, "vm-404", UBUNTU)


class TestCertificate:
    async def test_install_uploads_key_and_certificate(self, credentials, hypervisor, vault, vm, vm_ref):
        issued = await credentials.install(SshMode.CERTIFICATE, vm, vm_ref, UBUNTU)
        info = issued.ssh_info
        assert issued.root_password is None
        assert info.mode == SshMode.CERTIFICATE
        assert info.fingerprint.startswith("SHA256:")
        assert info.fingerprint == fingerprint(info.public_cert)

        cert = x509.load_pem_x509_certificate(info.public_cert.encode("ascii"))
        assert cert.subject.rfc4514_string() == f"CN={vm.name}-{vm.id}"
        assert cert.issuer.rfc4514_string() == "CN=Test VMCA"

        uploads = {upload["path"]: upload["data"] for upload in hypervisor.uploads}
        authorized = uploads["/root/.ssh/authorized_keys"].decode("ascii")
        assert authorized.startswith("ssh-rsa ")
        assert authorized.strip().endswith(key_comment(vm.id))
        assert uploads[f"/etc/ssl/certs/{key_comment(vm.id)}.pem"].decode("ascii") == info.public_cert

    async def test_private_key_matches_and_is_encrypted_at_rest(self, credentials, vault, vm, vm_ref):
        issued = await credentials.install(SshMode.CERTIFICATE, vm, vm_ref, UBUNTU)
        stored = vault.decrypt(issued.ssh_info.private_key_encrypted).decode("ascii")
        assert stored == issued.ssh.private_key_pem
        assert "BEGIN RSA PRIVATE KEY" in stored
        key = serialization.load_pem_private_key(stored.encode("ascii"), password=None)
        cert = x509.load_pem_x509_certificate(issued.ssh_info.public_cert.encode("ascii"))
        assert key.public_key().public_numbers() == cert.public_key().public_numbers()

    async def test_wipe_removes_only_this_key(self, credentials, hypervisor, vm, vm_ref):
        issued = await credentials.install(SshMode.CERTIFICATE, vm, vm_ref, UBUNTU)
        await credentials.wipe(issued, vm, vm_ref, UBUNTU)
        assert f"/{key_comment(vm.id)}/d" in hypervisor.guest_runs[-1]["arguments"]

    async def test_windows_paths(self, credentials, hypervisor, vm, vm_ref):
        await credentials.install(SshMode.CERTIFICATE, vm, vm_ref, WINDOWS)
        paths = [upload["path"] for upload in hypervisor.uploads]
        assert r"C:\ProgramData\ssh\administrators_authorized_keys" in paths
        assert "icacls" in hypervisor.guest_runs[-1]["arguments"]


def _authorized_key(hypervisor) -> str:
    [*_, last] = [u for u in hypervisor.uploads if u["path"] == "/root/.ssh/authorized_keys"]
    return last["data"].decode("ascii")


def _public_line(private_key_pem: str) -> str:
    key = serialization.load_pem_private_key(private_key_pem.encode("ascii"), password=None)
    return key.public_key().public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    ).decode("ascii")


class TestRotation:
    async def test_new_key_replaces_old(self, credentials, hypervisor, vault, vm, vm_ref):
        old = await credentials.install(SshMode.CERTIFICATE, vm, vm_ref, UBUNTU)
        new = await credentials.rotate(old.ssh_info, vm, vm_ref, UBUNTU)
        assert new.ssh_info.fingerprint != old.ssh_info.fingerprint
        assert new.ssh.private_key_pem != old.ssh.private_key_pem
        assert _authorized_key(hypervisor).startswith(_public_line(new.ssh.private_key_pem))
        stored = vault.decrypt(new.ssh_info.private_key_encrypted).decode("ascii")
        assert stored == new.ssh.private_key_pem

    async def test_failed_rotation_puts_old_key_back(self, credentials, hypervisor, vm, vm_ref):
        old = await credentials.install(SshMode.CERTIFICATE, vm, vm_ref, UBUNTU)
        # First guest command of each of the three install attempts
        hypervisor.guest_exit_codes = [1, 1, 1]
        with pytest.raises(CredentialsInstallFailed):
            await credentials.rotate(old.ssh_info, vm, vm_ref, UBUNTU)
        assert _authorized_key(hypervisor).startswith(_public_line(old.ssh.private_key_pem))
        certs = [u for u in hypervisor.uploads if u["path"] == f"/etc/ssl/certs/{key_comment(vm.id)}.pem"]
        assert certs[-1]["data"].decode("ascii") == old.ssh_info.public_cert

    async def test_password_vm_cannot_rotate(self, credentials, vm, vm_ref):
        old = await credentials.install(SshMode.ROOT_PASSWORD, vm, vm_ref, UBUNTU)
        with pytest.raises(Conflict):
            await credentials.rotate(old.ssh_info, vm, vm_ref, UBUNTU)
