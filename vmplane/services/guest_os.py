from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from pyVmomi import vim

from vmplane.core.exceptions import UnsupportedOS

LINUX = "linux"
WINDOWS = "windows"


@dataclass(frozen=True)
class OSProfile:
    name: str
    bitness: int
    family: str
    guest_id: str
    # Template VM (inside TEMPLATE_FOLDER) that deployments of this OS are cloned from
    template: str
    # apt / dnf / choco
    package_manager: str
    display_name: str = ""

    @property
    def is_windows(self) -> bool:
        return self.family == WINDOWS

    def customization_options(self):
        if self.is_windows:
            # Keep the template's accounts and SID, reboot once sysprep is done
            return vim.vm.customization.WinOptions(
                changeSID=False,
                deleteAccounts=False,
                reboot=vim.vm.customization.WinOptions.SysprepRebootOption.reboot,
            )
        return vim.vm.customization.LinuxOptions()

    def identity(self, hostname: str, domain: str, admin_password: Optional[str] = None):
        computer_name = vim.vm.customization.FixedName(name=hostname)
        if not self.is_windows:
            return vim.vm.customization.LinuxPrep(
                hostName=computer_name,
                domain=domain,
                hwClockUTC=True,
            )

        gui_unattended = vim.vm.customization.GuiUnattended(autoLogon=False, autoLogonCount=0, timeZone=85)
        if admin_password:
            gui_unattended.password = vim.vm.customization.Password(value=admin_password, plainText=True)
        return vim.vm.customization.Sysprep(
            guiUnattended=gui_unattended,
            userData=vim.vm.customization.UserData(
                computerName=computer_name,
                fullName="Administrator",
                orgName=domain,
                productId="",
            ),
            identification=vim.vm.customization.Identification(joinWorkgroup="WORKGROUP"),
        )


def _linux(name, bitness, guest_id, package_manager, display_name):
    return OSProfile(
        name=name,
        bitness=bitness,
        family=LINUX,
        guest_id=guest_id,
        template=f"{name}{bitness}-template",
        package_manager=package_manager,
        display_name=display_name,
    )


def _windows(name, bitness, guest_id, display_name):
    return OSProfile(
        name=name,
        bitness=bitness,
        family=WINDOWS,
        guest_id=guest_id,
        template=f"{name}{bitness}-template",
        package_manager="choco",
        display_name=display_name,
    )


LINUX_DISTROS: Dict[Tuple[str, int], OSProfile] = {
    ("ubuntu", 64): _linux("ubuntu", 64, "ubuntu64Guest", "apt", "Ubuntu Server 22.04 LTS"),
    ("ubuntu", 32): _linux("ubuntu", 32, "ubuntuGuest", "apt", "Ubuntu Server 18.04 LTS"),
    ("debian", 64): _linux("debian", 64, "debian11_64Guest", "apt", "Debian 11"),
    ("centos", 64): _linux("centos", 64, "centos8_64Guest", "dnf", "CentOS Stream 8"),
    ("fedora", 64): _linux("fedora", 64, "fedora64Guest", "dnf", "Fedora Server"),
}

WINDOWS_DISTROS: Dict[Tuple[str, int], OSProfile] = {
    ("windows", 64): _windows("windows", 64, "windows2019srv_64Guest", "Windows Server 2019"),
    ("windows10", 64): _windows("windows10", 64, "windows9_64Guest", "Windows 10"),
}


def resolve(name: str, bitness: int) -> OSProfile:
    key = (name.strip().lower(), bitness)
    profile = LINUX_DISTROS.get(key) or WINDOWS_DISTROS.get(key)
    if profile is None:
        raise UnsupportedOS(f"Unsupported operating system: {name} ({bitness}-bit)")
    return profile


def supported() -> List[OSProfile]:
    return list(LINUX_DISTROS.values()) + list(WINDOWS_DISTROS.values())
