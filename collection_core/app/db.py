import os
from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .logging_config import get_logger

logger = get_logger("db")

# Prefer explicit DATABASE_URL env var. If not provided, construct a local
# SQLite URL in a `data/` folder adjacent to the package directory.
env_db = os.getenv("DATABASE_URL")
if env_db:
    DATABASE_URL = env_db
else:
    pkg_root = Path(__file__).resolve().parents[1]
    data_dir = pkg_root / "data"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        # read-only install; fall back to in-memory DB
        data_dir = None
    if data_dir:
        db_file = data_dir / "collection_core.db"
        DATABASE_URL = f"sqlite:///{db_file.as_posix()}"
    else:
        DATABASE_URL = "sqlite:///:memory:"

logger.info("database_url_selected", extra={"database_url": DATABASE_URL.split("@")[-1]})

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def create_db_and_tables(bind=None):
    # models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
