from typing import Dict, List
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "VM Control Plane"

    # Hypervisor (vCenter) endpoint and service account
    API_SOURCE_IP: str = ""
    API_SOURCE_USERNAME: str = ""
    API_SOURCE_PASSWORD: str = ""
    # Lab vCenters usually run with self-signed certificates
    API_SOURCE_VERIFY_SSL: bool = False

    # Bearer tokens
    JWT_SECRET_KEY: str = ""
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 10000

    # Encrypts guest private keys at rest. Must stay static, otherwise stored keys become unreadable.
    SSH_KEY_SECRET: str = ""

    APPLICATION_HOST: str = "0.0.0.0"
    APPLICATION_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Format: postgresql+psycopg2://<user>:<password>@<host>:<port>/<db_name>
    DATABASE_URL: str = "sqlite:///./vmplane.db"

    # Version of Docker installed into Linux guests ("" = latest stable)
    DATACENTER_DOCKER_VERSION: str = ""

    # Credentials baked into the clone templates, used for guest operations
    # until the per-VM credentials are installed.
    TEMPLATE_GUEST_USER: str = "root"
    TEMPLATE_GUEST_PASSWORD: str = ""
    TEMPLATE_FOLDER: str = "templates"

    # Port group name -> CIDR, e.g. {"VM Network": "10.0.0.0/24"}
    NETWORK_SUBNETS: Dict[str, str] = {}
    DEFAULT_DNS: List[str] = ["1.1.1.1", "1.0.0.1"]
    DEFAULT_DOMAIN: str = "localdomain"

    # Edge proxy: one admin socket per host, named <host>.sock
    EDGE_SOCKET_DIR: str = "/var/run/vmplane-edge"
    EDGE_BASE_DOMAIN: str = "vms.local"
    EDGE_UPSTREAM_PORT: int = 80

    # Timeouts (seconds)
    DEPLOYMENT_TIMEOUT_SECONDS: float = 1200
    CLONE_TIMEOUT_SECONDS: float = 600
    CONTROL_TIMEOUT_SECONDS: float = 10
    # How long a soft shutdown may take before the VM is powered off
    GUEST_SHUTDOWN_TIMEOUT_SECONDS: float = 60
    IP_WAIT_TIMEOUT_SECONDS: float = 300
    IP_POLL_INTERVAL_SECONDS: float = 5
    TASK_POLL_INTERVAL_SECONDS: float = 1
    SSH_CONNECT_TIMEOUT_SECONDS: float = 30
    SSH_COMMAND_TIMEOUT_SECONDS: float = 120
    EDGE_TIMEOUT_SECONDS: float = 5
    DEPLOY_LOCK_TIMEOUT_SECONDS: float = 30

    AUDIT_RETENTION_DAYS: int = 90

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def key_secret(self) -> str:
        return self.SSH_KEY_SECRET or self.JWT_SECRET_KEY

    def missing_required(self) -> List[str]:
        required = ["API_SOURCE_IP", "API_SOURCE_USERNAME", "API_SOURCE_PASSWORD", "JWT_SECRET_KEY"]
        return [name for name in required if not getattr(self, name)]

settings = Settings()
