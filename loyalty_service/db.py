from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

def make_engine(url: str):
    if url.startswith("sqlite"):
        # the reconciler thread and request handlers share one file
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def make_sessionmaker(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)
