"""Tests for vmplane.services.bootstrap."""
import threading

import paramiko
import pytest

from vmplane.core.exceptions import Cancelled, GuestUnreachable, Timeout
from vmplane.schemas import Tool
from vmplane.services import guest_os
from vmplane.services.bootstrap import (
    CommandOutcome,
    GuestBootstrapExecutor,
    LinuxCommandSource,
    WindowsCommandSource,
    command_source,
)
from vmplane.services.credentials import GuestCredentials
from vmplane.services.orchestrator import Deadline

UBUNTU = guest_os.resolve("ubuntu", 64)
CENTOS = guest_os.resolve("centos", 64)
FEDORA = guest_os.resolve("fedora", 64)
WINDOWS = guest_os.resolve("windows", 64)
ROOT = GuestCredentials(username="root", password="secret")


class TestCommandSource:
    def test_family_dispatch(self):
        assert isinstance(command_source(UBUNTU), LinuxCommandSource)
        assert isinstance(command_source(WINDOWS), WindowsCommandSource)

    def test_no_tools_no_commands(self):
        assert command_source(UBUNTU).commands_for([]) == []
        assert command_source(WINDOWS).commands_for([]) == []

    def test_docker_install_is_second_command(self):
        commands = command_source(UBUNTU).commands_for([Tool.DOCKER])
        assert len(commands) == 3
        assert commands[0].startswith("curl -fsSL https://get.docker.com")
        assert commands[1] == "sh /tmp/get-docker.sh"
        assert commands[2] == "systemctl enable --now docker"

    def test_docker_version_is_pinned(self):
        commands = command_source(UBUNTU, "24.0.7").commands_for([Tool.DOCKER])
        assert commands[1] == "VERSION=24.0.7 sh /tmp/get-docker.sh"

    def test_compose_pulls_in_docker_first(self):
        commands = command_source(UBUNTU).commands_for([Tool.DOCKER_COMPOSE])
        assert commands[1] == "sh /tmp/get-docker.sh"
        assert "docker-compose-plugin" in commands[3]

    def test_package_manager_per_distribution(self):
        assert command_source(UBUNTU).commands_for([Tool.PODMAN]) == [
            "apt-get update -y",
            "DEBIAN_FRONTEND=noninteractive apt-get install -y podman",
        ]
        assert command_source(CENTOS).commands_for([Tool.PODMAN]) == ["dnf makecache -y", "dnf install -y podman"]

    def test_virtualbox_repository_flavour(self):
        assert "/rpm/fedora/" in command_source(FEDORA).commands_for([Tool.VIRTUALBOX])[0]
        assert "/rpm/el/" in command_source(CENTOS).commands_for([Tool.VIRTUALBOX])[0]

    def test_windows_installs_chocolatey_first(self):
        commands = command_source(WINDOWS, "24.0.7").commands_for([Tool.DOCKER])
        assert "chocolatey.org/install.ps1" in commands[0]
        assert commands[1] == "choco install -y --no-progress docker-engine --version=24.0.7"
        assert commands[2] == "sc.exe start docker"


class TestExecutor:
    def test_runs_commands_in_order(self, executor, ssh):
        result = executor.execute("10.0.0.42", UBUNTU, ROOT, ["echo one", "echo two"])
        assert result.ok
        assert result.failed_command is None
        assert ssh.commands == ["echo one", "echo two"]
        assert result.output == "ok 1\nok 2\n"
        assert ssh.connections == [("10.0.0.42", "root")]
        assert ssh.closed == 1

    def test_stops_at_first_non_zero_exit(self, executor, ssh):
        ssh.outcomes[2] = CommandOutcome(exit_code=100, stdout="", stderr="E: Unable to locate package")
        result = executor.execute("10.0.0.42", UBUNTU, ROOT, ["a", "b", "c"])
        assert not result.ok
        assert result.failed_command == 2
        assert "code 100" in result.error
        assert ssh.commands == ["a", "b"]
        assert ssh.closed == 1

    def test_error_on_stderr_fails_despite_zero_exit(self, executor, ssh):
        ssh.outcomes[1] = CommandOutcome(exit_code=0, stdout="", stderr="warning: x\nERROR: repository not found\n")
        result = executor.execute("10.0.0.42", UBUNTU, ROOT, ["a", "b"])
        assert result.failed_command == 1
        assert "repository not found" in result.error

    def test_stderr_noise_is_tolerated(self, executor, ssh):
        ssh.outcomes[1] = CommandOutcome(exit_code=0, stdout="", stderr="% Total  % Received\nterrors: 0\n")
        assert executor.execute("10.0.0.42", UBUNTU, ROOT, ["a"]).ok

    def test_empty_command_list_does_not_connect(self, executor, ssh):
        result = executor.execute("10.0.0.42", UBUNTU, ROOT, [])
        assert result.ok
        assert ssh.connections == []

    def test_retries_until_sshd_is_up(self, executor, ssh):
        ssh.open_errors = [ConnectionRefusedError(111, "Connection refused"),
                           paramiko.SSHException("Error reading SSH protocol banner")]
        assert executor.execute("10.0.0.42", UBUNTU, ROOT, ["a"]).ok
        assert len(ssh.connections) == 3

    def test_authentication_failure_is_not_retried(self, executor, ssh):
        ssh.open_errors = [paramiko.AuthenticationException("Authentication failed.")]
        with pytest.raises(GuestUnreachable, match="authentication"):
            executor.execute("10.0.0.42", UBUNTU, ROOT, ["a"])
        assert len(ssh.connections) == 1

    def test_gives_up_at_connect_deadline(self, ssh):
        ssh.open_errors = [OSError("No route to host")] * 1000
        executor = GuestBootstrapExecutor(connect_timeout=0.1, session_factory=ssh.factory, retry_interval=0.01)
        with pytest.raises(GuestUnreachable, match="No route to host"):
            executor.execute("10.0.0.42", UBUNTU, ROOT, ["a"])


class TestExecutorLimits:
    @pytest.fixture
    def clock(self):
        return [100.0]

    @pytest.fixture
    def deadline(self, clock):
        return Deadline(30, clock=lambda: clock[0])

    def test_timeouts_capped_by_deadline(self, ssh, clock, deadline):
        executor = GuestBootstrapExecutor(connect_timeout=60, command_timeout=120, session_factory=ssh.factory)
        clock[0] += 25
        assert executor.execute("10.0.0.42", UBUNTU, ROOT, ["a"], deadline=deadline).ok
        assert ssh.open_timeouts[0] <= 5
        assert ssh.timeouts == [5]

    def test_deadline_passing_between_commands(self, executor, ssh, clock, deadline):
        def late(index, command):
            clock[0] += 31

        ssh.on_run = late
        with pytest.raises(Timeout):
            executor.execute("10.0.0.42", UBUNTU, ROOT, ["a", "b", "c"], deadline=deadline)
        assert ssh.commands == ["a"]
        assert ssh.closed == 1

    def test_expired_deadline_does_not_connect(self, executor, ssh, clock, deadline):
        clock[0] += 30
        with pytest.raises(Timeout):
            executor.execute("10.0.0.42", UBUNTU, ROOT, ["a"], deadline=deadline)
        assert ssh.connections == []

    def test_cancel_between_commands(self, executor, ssh):
        cancel_event = threading.Event()
        ssh.on_run = lambda index, command: cancel_event.set()
        with pytest.raises(Cancelled):
            executor.execute("10.0.0.42", UBUNTU, ROOT, ["a", "b"], cancel_event=cancel_event)
        assert ssh.commands == ["a"]
        assert ssh.closed == 1
