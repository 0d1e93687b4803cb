"""Shared fixtures: in-memory catalog, fake vCenter, fake edge proxies and scripted guest SSH."""
import os

# Settings and the default engine are built at import time
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["DATABASE_URL"] = "sqlite://"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from fakes import FakeEdge, FakeHypervisor, SshScript, make_snapshot  # noqa: E402
from vmplane.core.config import Settings  # noqa: E402
from vmplane.core.database import create_db_and_tables, make_engine  # noqa: E402
from vmplane.core.security import KeyVault, get_password_hash  # noqa: E402
from vmplane.main import create_app  # noqa: E402
from vmplane.schemas import CustomSpec, HardwareSpec  # noqa: E402
from vmplane.services.bootstrap import GuestBootstrapExecutor  # noqa: E402
from vmplane.services.catalog import VMCatalog  # noqa: E402
from vmplane.services.credentials import CredentialsManager  # noqa: E402
from vmplane.services.edge_router import EdgeRouterController  # noqa: E402
from vmplane.services.lifecycle import LifecycleManager  # noqa: E402
from vmplane.services.orchestrator import DeploymentOrchestrator  # noqa: E402

ALICE_PASSWORD = "wonderland"
BOB_PASSWORD = "builder-bob"


@pytest.fixture
def config(tmp_path) -> Settings:
    return Settings(
        JWT_SECRET_KEY="test-secret",
        SSH_KEY_SECRET="key-secret",
        TEMPLATE_GUEST_USER="root",
        TEMPLATE_GUEST_PASSWORD="template-pass",
        NETWORK_SUBNETS={"VM Network": "10.0.0.0/24"},
        EDGE_SOCKET_DIR=str(tmp_path),
        EDGE_BASE_DOMAIN="vms.test",
        DATACENTER_DOCKER_VERSION="24.0.7",
        CLONE_TIMEOUT_SECONDS=0.5,
        CONTROL_TIMEOUT_SECONDS=2,
        GUEST_SHUTDOWN_TIMEOUT_SECONDS=0.2,
        IP_WAIT_TIMEOUT_SECONDS=1,
        IP_POLL_INTERVAL_SECONDS=0.01,
        TASK_POLL_INTERVAL_SECONDS=0.01,
        DEPLOY_LOCK_TIMEOUT_SECONDS=5,
    )


@pytest.fixture
def catalog() -> VMCatalog:
    engine = make_engine("sqlite://")
    create_db_and_tables(engine)
    return VMCatalog(engine)


@pytest.fixture
def alice(catalog):
    return catalog.create_customer("alice", "alice@example.com", get_password_hash(ALICE_PASSWORD))


@pytest.fixture
def bob(catalog):
    return catalog.create_customer("bob", "bob@example.com", get_password_hash(BOB_PASSWORD))


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor(make_snapshot())


@pytest.fixture
def edge_proxy() -> FakeEdge:
    return FakeEdge()


@pytest.fixture
def edge(config, edge_proxy) -> EdgeRouterController:
    return EdgeRouterController(config.EDGE_SOCKET_DIR, config.EDGE_BASE_DOMAIN,
                                transport_factory=edge_proxy.transport, min_wait=0.001, max_wait=0.002)


@pytest.fixture
def ssh() -> SshScript:
    return SshScript()


@pytest.fixture
def executor(ssh) -> GuestBootstrapExecutor:
    return GuestBootstrapExecutor(connect_timeout=1, command_timeout=1, session_factory=ssh.factory,
                                  retry_interval=0.01)


@pytest.fixture
def vault(config) -> KeyVault:
    return KeyVault(config.key_secret)


@pytest.fixture
def credentials(hypervisor, vault, config) -> CredentialsManager:
    return CredentialsManager(hypervisor, vault, config.TEMPLATE_GUEST_USER, config.TEMPLATE_GUEST_PASSWORD,
                              min_wait=0.001, max_wait=0.002)


@pytest.fixture
def orchestrator(hypervisor, catalog, credentials, executor, edge, config) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(hypervisor, catalog, credentials, executor, edge, config)


@pytest.fixture
def lifecycle(hypervisor, catalog, edge, config, credentials) -> LifecycleManager:
    return LifecycleManager(hypervisor, catalog, edge, config, credentials)


@pytest.fixture
def hardware() -> HardwareSpec:
    return HardwareSpec(
        cpuCount=4,
        memoryMB=8192,
        diskCapacityKB=20 * 1024 * 1024,
        osName="ubuntu",
        osBitness=64,
        networkIp="10.0.0.42",
        gateway="10.0.0.1",
        hostname="web01",
    )


@pytest.fixture
def custom() -> CustomSpec:
    return CustomSpec(vmName="web01", preInstalledTools=["Docker"])


@pytest.fixture
def deploy_body(alice):
    return {
        "customerId": alice.id,
        "hardwareSpec": {
            "cpuCount": 4,
            "memoryMB": 8192,
            "diskCapacityKB": 20 * 1024 * 1024,
            "osName": "ubuntu",
            "osBitness": 64,
            "networkIp": "10.0.0.42",
            "gateway": "10.0.0.1",
            "hostname": "web01",
        },
        "customSpec": {"vmName": "web01", "preInstalledTools": ["Docker"]},
    }


@pytest.fixture
def app(hypervisor, catalog, edge, executor, config):
    return create_app(hypervisor=hypervisor, catalog=catalog, edge=edge, executor=executor, config=config)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def login(client, username: str, password: str) -> dict:
    response = client.post("/customer/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def alice_headers(client, alice):
    return login(client, "alice", ALICE_PASSWORD)


@pytest.fixture
def bob_headers(client, bob):
    return login(client, "bob", BOB_PASSWORD)
