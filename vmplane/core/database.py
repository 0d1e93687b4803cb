from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine
from .config import settings


def make_engine(url: str):
    kwargs = {}
    if url.startswith("sqlite"):
        # Sessions are used from the threadpool as well as the event loop
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=False, **kwargs)


engine = make_engine(settings.DATABASE_URL)


def create_db_and_tables(bind=None):
    # Table classes must be imported before create_all sees them
    from vmplane.models import audit, customer, route_binding, ssh_info, vm  # noqa: F401
    SQLModel.metadata.create_all(bind or engine)
