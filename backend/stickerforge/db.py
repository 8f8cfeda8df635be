# backend/stickerforge/db.py
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine


def make_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # the queue touches the database from worker threads
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, echo=False, connect_args=connect_args, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)
