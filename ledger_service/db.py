from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine, SQLModel


def make_engine(url: str, echo: bool = False):
    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        # handlers run on the threadpool
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def init_db(engine):
    from .models import Member, Task, FamilySetting  # noqa
    SQLModel.metadata.create_all(engine)
