import asyncio
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from fastapi.concurrency import run_in_threadpool

from vmplane.core.config import settings
from vmplane.core.database import create_db_and_tables, engine
from vmplane.core.exceptions import ControlPlaneError, HypervisorUnavailable, Internal, InvalidSpec
from vmplane.core.security import KeyVault, TokenDenyList
from vmplane.routers import customer, suggest, vm
from vmplane.services.bootstrap import GuestBootstrapExecutor
from vmplane.services.catalog import VMCatalog
from vmplane.services.credentials import CredentialsManager
from vmplane.services.edge_router import EdgeRouterController
from vmplane.services.hypervisor import HypervisorClient
from vmplane.services.lifecycle import LifecycleManager
from vmplane.services.orchestrator import DeploymentOrchestrator
from vmplane.services.suggestions import SuggestionService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
AUDIT_PURGE_INTERVAL_SECONDS = 86400


def configure_logging(level: str = None):
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel((level or settings.LOG_LEVEL).upper())
    # Transport chatter drowns everything else at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)


async def purge_expired_audit(catalog: VMCatalog, retention_days: int):
    while True:
        # Once a day; startup runs the first purge
        await asyncio.sleep(AUDIT_PURGE_INTERVAL_SECONDS)
        try:
            await run_in_threadpool(catalog.purge_audit, retention_days)
        except SQLAlchemyError as e:
            logger.error(f"Error in audit purge: {e}")


def build_services(state, config, hypervisor, catalog, edge, executor):
    """Wires the process-wide collaborators onto `app.state`."""
    state.config = config
    state.hypervisor = hypervisor
    state.catalog = catalog
    state.edge = edge
    state.deny_list = TokenDenyList()
    state.vault = KeyVault(config.key_secret)
    credentials = CredentialsManager(hypervisor, state.vault, config.TEMPLATE_GUEST_USER,
                                     config.TEMPLATE_GUEST_PASSWORD)
    state.orchestrator = DeploymentOrchestrator(hypervisor, catalog, credentials, executor, edge, config)
    state.lifecycle = LifecycleManager(hypervisor, catalog, edge, config, credentials)
    state.suggestions = SuggestionService(hypervisor, edge)


def create_app(hypervisor=None, catalog=None, edge=None, executor=None, config=None) -> FastAPI:
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal hypervisor, catalog, edge, executor
        if catalog is None:
            create_db_and_tables()
            catalog = VMCatalog(engine)
        if hypervisor is None:
            hypervisor = HypervisorClient()
        if edge is None:
            edge = EdgeRouterController(config.EDGE_SOCKET_DIR, config.EDGE_BASE_DOMAIN,
                                        config.EDGE_UPSTREAM_PORT, config.EDGE_TIMEOUT_SECONDS)
        if executor is None:
            executor = GuestBootstrapExecutor(config.SSH_CONNECT_TIMEOUT_SECONDS, config.SSH_COMMAND_TIMEOUT_SECONDS)

        await run_in_threadpool(hypervisor.acquire)
        build_services(app.state, config, hypervisor, catalog, edge, executor)
        purged = catalog.purge_audit(config.AUDIT_RETENTION_DAYS)
        if purged:
            logger.info(f"Purged {purged} expired audit rows")

        purge_task = asyncio.create_task(purge_expired_audit(catalog, config.AUDIT_RETENTION_DAYS))
        try:
            yield
        finally:
            purge_task.cancel()
            await run_in_threadpool(hypervisor.release)
            logger.info("Control plane stopped")

    app = FastAPI(title=config.PROJECT_NAME, lifespan=lifespan)

    @app.exception_handler(ControlPlaneError)
    async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        # Only locations and messages: the offending input may be a password
        problems = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())[1:])
            problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        error = InvalidSpec("; ".join(problems) or "Invalid request")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        error = Internal("Internal error")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    app.include_router(customer.router)
    app.include_router(vm.router)
    app.include_router(suggest.router)
    return app


app = create_app()


def serve():
    configure_logging(settings.LOG_LEVEL)
    try:
        missing = settings.missing_required()
        if missing:
            logger.error(f"Missing required environment variables: {', '.join(missing)}")
            sys.exit(1)

        try:
            create_db_and_tables()
        except SQLAlchemyError as e:
            logger.error(f"Cannot open the catalog at {engine.url.render_as_string(hide_password=True)}: {e}")
            sys.exit(1)

        hypervisor = HypervisorClient()
        try:
            hypervisor.acquire()
        except HypervisorUnavailable as e:
            logger.error(f"Cannot reach the hypervisor: {e.detail}")
            sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("Interrupted during startup")
        sys.exit(2)

    try:
        uvicorn.run(
            create_app(hypervisor=hypervisor, catalog=VMCatalog(engine)),
            host=settings.APPLICATION_HOST,
            port=settings.APPLICATION_PORT,
            log_level=settings.LOG_LEVEL.lower(),
            log_config=None,
        )
    finally:
        hypervisor.release()
