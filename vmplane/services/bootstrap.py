import io
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import paramiko

from vmplane.core.exceptions import Cancelled, GuestUnreachable, Timeout
from vmplane.schemas import Tool
from vmplane.services.credentials import GuestCredentials
from vmplane.services.guest_os import OSProfile

logger = logging.getLogger(__name__)

# Some installers print errors and still exit 0
STDERR_ERROR = re.compile(r"(?i)\berror\b")

_READ_CHUNK = 32768


# Commands per distribution

class CommandSource(ABC):
    """Install commands of the pre-installable tools for one guest OS family."""

    def __init__(self, profile: OSProfile, docker_version: str = ""):
        self.profile = profile
        self.docker_version = docker_version

    def prepare(self) -> List[str]:
        """Commands run once before any tool, e.g. installing the package manager."""
        return []

    @abstractmethod
    def docker(self) -> List[str]:
        ...

    @abstractmethod
    def docker_compose(self) -> List[str]:
        ...

    @abstractmethod
    def podman(self) -> List[str]:
        ...

    @abstractmethod
    def virtualbox(self) -> List[str]:
        ...

    def commands_for(self, tools: Sequence[Tool]) -> List[str]:
        tools = list(tools)
        if not tools:
            return []
        # Compose is a Docker plugin
        if Tool.DOCKER_COMPOSE in tools and Tool.DOCKER not in tools:
            tools.insert(tools.index(Tool.DOCKER_COMPOSE), Tool.DOCKER)

        builders = {
            Tool.DOCKER: self.docker,
            Tool.DOCKER_COMPOSE: self.docker_compose,
            Tool.PODMAN: self.podman,
            Tool.VIRTUALBOX: self.virtualbox,
        }
        commands = self.prepare()
        for tool in tools:
            commands.extend(builders[Tool(tool)]())
        return commands


class LinuxCommandSource(CommandSource):

    def _install(self, *packages: str) -> str:
        if self.profile.package_manager == "apt":
            return f"DEBIAN_FRONTEND=noninteractive apt-get install -y {' '.join(packages)}"
        return f"dnf install -y {' '.join(packages)}"

    def _refresh(self) -> str:
        if self.profile.package_manager == "apt":
            return "apt-get update -y"
        return "dnf makecache -y"

    def docker(self):
        # get.docker.com picks the right repository for apt and dnf distributions
        install = "sh /tmp/get-docker.sh"
        if self.docker_version:
            install = f"VERSION={self.docker_version} {install}"
        return [
            "curl -fsSL https://get.docker.com -o /tmp/get-docker.sh",
            install,
            "systemctl enable --now docker",
        ]

    def docker_compose(self):
        return [self._install("docker-compose-plugin"), "docker compose version"]

    def podman(self):
        return [self._refresh(), self._install("podman")]

    def virtualbox(self):
        if self.profile.package_manager == "apt":
            return [self._refresh(), self._install("virtualbox")]
        flavour = "fedora" if self.profile.name == "fedora" else "el"
        return [
            f"dnf config-manager --add-repo https://download.virtualbox.org/virtualbox/rpm/{flavour}/virtualbox.repo",
            self._install("VirtualBox-7.0"),
        ]


class WindowsCommandSource(CommandSource):

    @staticmethod
    def _powershell(script: str) -> str:
        return f'powershell -NoProfile -ExecutionPolicy Bypass -Command "{script}"'

    def _choco(self, package: str, version: str = "") -> str:
        pin = f" --version={version}" if version else ""
        return f"choco install -y --no-progress {package}{pin}"

    def prepare(self):
        return [self._powershell(
            "[System.Net.ServicePointManager]::SecurityProtocol = 3072; "
            "iex ((New-Object System.Net.WebClient).DownloadString('https://community.chocolatey.org/install.ps1'))"
        )]

    def docker(self):
        return [self._choco("docker-engine", self.docker_version), "sc.exe start docker"]

    def docker_compose(self):
        return [self._choco("docker-compose")]

    def podman(self):
        return [self._choco("podman-cli")]

    def virtualbox(self):
        return [self._choco("virtualbox")]


def command_source(profile: OSProfile, docker_version: str = "") -> CommandSource:
    if profile.is_windows:
        return WindowsCommandSource(profile, docker_version)
    return LinuxCommandSource(profile, docker_version)


# SSH execution

@dataclass
class CommandOutcome:
    exit_code: int
    stdout: str
    stderr: str


@dataclass
class BootstrapResult:
    output: str
    error: Optional[str] = None
    # 1-based index of the command that stopped the run
    failed_command: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ParamikoSession:
    """One SSH connection to a guest. Not shared between deployments."""

    def __init__(self, host: str, credentials: GuestCredentials, port: int = 22):
        self.host = host
        self.port = port
        self.credentials = credentials
        self._client: Optional[paramiko.SSHClient] = None

    def open(self, timeout: float):
        client = paramiko.SSHClient()
        # Guests are freshly cloned, their host keys can't be known in advance
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        pkey = None
        if self.credentials.private_key_pem:
            pkey = paramiko.RSAKey.from_private_key(io.StringIO(self.credentials.private_key_pem))
        client.connect(
            self.host,
            port=self.port,
            username=self.credentials.username,
            password=self.credentials.password,
            pkey=pkey,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            look_for_keys=False,
            allow_agent=False,
        )
        self._client = client

    def run(self, command: str, timeout: float) -> CommandOutcome:
        channel = self._client.get_transport().open_session(timeout=timeout)
        try:
            channel.exec_command(command)
            deadline = time.monotonic() + timeout
            stdout, stderr = [], []
            while True:
                while channel.recv_ready():
                    stdout.append(channel.recv(_READ_CHUNK))
                while channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(_READ_CHUNK))
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if time.monotonic() > deadline:
                    raise Timeout(f"Command did not finish within {timeout:.0f}s")
                time.sleep(0.1)
            return CommandOutcome(
                exit_code=channel.recv_exit_status(),
                stdout=b"".join(stdout).decode("utf-8", errors="replace"),
                stderr=b"".join(stderr).decode("utf-8", errors="replace"),
            )
        finally:
            channel.close()

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None


class GuestBootstrapExecutor:
    """
    Runs an ordered list of shell commands in a guest over SSH.

    Stops at the first command that exits non-zero, or that exits 0 but
    prints a line matching `error` on stderr. The result carries the
    accumulated stdout and the 1-based index of the failing command.
    """

    def __init__(self, connect_timeout: float = 30, command_timeout: float = 120,
                 session_factory: Callable[..., ParamikoSession] = ParamikoSession, retry_interval: float = 2):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.session_factory = session_factory
        self.retry_interval = retry_interval

    @staticmethod
    def _budget(seconds: float, deadline) -> float:
        """`seconds`, capped by what is left of `deadline` (anything with `remaining()`)."""
        if deadline is None:
            return seconds
        remaining = deadline.remaining()
        if remaining <= 0:
            raise Timeout("Deployment deadline exceeded during bootstrap")
        return min(seconds, remaining)

    @staticmethod
    def _check_cancelled(cancel_event, vm_ip: str):
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(f"Bootstrap of {vm_ip} cancelled")

    def _connect(self, vm_ip: str, credentials: GuestCredentials, deadline=None, cancel_event=None):
        # sshd usually comes up a little after the guest reports its IP
        connect_timeout = self._budget(self.connect_timeout, deadline)
        give_up_at = time.monotonic() + connect_timeout
        last_error = None
        while True:
            self._check_cancelled(cancel_event, vm_ip)
            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                break
            session = self.session_factory(vm_ip, credentials)
            try:
                session.open(timeout=remaining)
                return session
            except paramiko.AuthenticationException as e:
                raise GuestUnreachable(f"SSH authentication to {vm_ip} failed: {e}")
            except (paramiko.SSHException, OSError) as e:
                last_error = e
                session.close()
                logger.debug(f"SSH to {vm_ip} not ready yet: {e}")
            time.sleep(min(self.retry_interval, max(0, give_up_at - time.monotonic())))
        if deadline is not None and deadline.remaining() <= 0:
            raise Timeout(f"Deployment deadline exceeded while connecting to {vm_ip}")
        raise GuestUnreachable(f"Cannot open SSH to {vm_ip} within {connect_timeout:.0f}s: {last_error}")

    def execute(self, vm_ip: str, profile: OSProfile, credentials: GuestCredentials,
                commands: Sequence[str], deadline=None, cancel_event=None) -> BootstrapResult:
        """
        Runs `commands` in order over one SSH session, stopping at the first failure.

        `deadline` caps the connect and per-command timeouts; `cancel_event`
        is checked before each command. Either one ending the run raises.
        """
        output = []
        if not commands:
            return BootstrapResult(output="")

        session = self._connect(vm_ip, credentials, deadline, cancel_event)
        try:
            for index, command in enumerate(commands, start=1):
                self._check_cancelled(cancel_event, vm_ip)
                timeout = self._budget(self.command_timeout, deadline)
                logger.info(f"[{vm_ip}] ({index}/{len(commands)}) {command}")
                try:
                    outcome = session.run(command, timeout)
                except (paramiko.SSHException, OSError) as e:
                    raise GuestUnreachable(f"SSH session to {vm_ip} broke during command {index}: {e}")
                output.append(outcome.stdout)

                if outcome.exit_code != 0:
                    logger.error(f"[{vm_ip}] command {index} exited with {outcome.exit_code}: {outcome.stderr.strip()}")
                    return BootstrapResult(
                        output="".join(output),
                        error=f"Command {index} exited with code {outcome.exit_code}",
                        failed_command=index,
                    )
                flagged = [line for line in outcome.stderr.splitlines() if STDERR_ERROR.search(line)]
                if flagged:
                    logger.error(f"[{vm_ip}] command {index} reported an error: {flagged[0]}")
                    return BootstrapResult(
                        output="".join(output),
                        error=f"Command {index} reported an error: {flagged[0][:200]}",
                        failed_command=index,
                    )
        finally:
            session.close()

        logger.info(f"[{vm_ip}] bootstrap of {profile.name} finished ({len(commands)} commands)")
        return BootstrapResult(output="".join(output))
