from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from billing.config import settings


def build_engine(url: str):
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=True,
    )


def build_session_factory(bind):
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = build_session_factory(engine)
Base = declarative_base()
