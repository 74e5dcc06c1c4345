# database.py
"""
Engine and sessions for the escrow store.

Azure SQL (MS SQL Server over pymssql) is the default target; DATABASE_URL
points the engine anywhere else, e.g. a SQLite file in tests. Row locks
taken by services.contract_lock need a backend that honours FOR UPDATE in
production.

Routes take a session per request:
     @app.get("/contracts/{contract_id}")
     def get_contract(contract_id: int, db: Session = Depends(get_session)):
          return ContractService.get_contract_snapshot(db, contract_id)
     """
import logging
import os
from contextlib import contextmanager
from typing import Generator
from urllib.parse import quote_plus

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Database configuration from environment
DB_SERVER = os.getenv("DB_SERVER")
DB_PORT = os.getenv("DB_PORT", "1433")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS")
DB_NAME = os.getenv("DB_NAME")


def mssql_url(user, password, server, port, name) -> str:
     """
     Connection string for MS SQL Server over pymssql.

     Credentials are URL-encoded so passwords containing @ / : survive.
     """
     safe_user = quote_plus(user or "")
     safe_pass = quote_plus(password or "")
     return f"mssql+pymssql://{safe_user}:{safe_pass}@{server}:{port}/{name}"


# DATABASE_URL overrides the MSSQL settings (tests use SQLite)
DATABASE_URL = os.getenv("DATABASE_URL") or mssql_url(DB_USER, DB_PASS, DB_SERVER, DB_PORT, DB_NAME)

SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"  # Log SQL if SQL_ECHO=true


def build_engine(url: str = DATABASE_URL):
     """Create an engine; SQLite gets a thread-shareable connection setup."""
     if url.startswith("sqlite"):
          return create_engine(
               url,
               connect_args={"check_same_thread": False},
               echo=SQL_ECHO,
          )
     return create_engine(
          url,
          poolclass=QueuePool,
          pool_size=5,
          max_overflow=10,
          pool_timeout=30,
          pool_recycle=1800,  # Recycle connections after 30 minutes
          echo=SQL_ECHO,
     )


# Create SQLAlchemy engine
engine = build_engine()

# Session factory
SessionLocal = sessionmaker(
     bind=engine,
     autocommit=False,
     autoflush=False,
     expire_on_commit=False,
)


def get_session() -> Generator[Session, None, None]:
     """
     FastAPI dependency that provides a database session.

     Services commit their own unit of work; anything left pending when
     the request finishes is committed here, and rolled back on error.

     Yields:
          Session: SQLAlchemy database session
     """
     session = SessionLocal()
     try:
          yield session
          session.commit()
     except Exception:
          session.rollback()
          raise
     finally:
          session.close()


@contextmanager
def get_session_context() -> Generator[Session, None, None]:
     """
     Context manager for database sessions (for use outside FastAPI routes).

     Usage:
          with get_session_context() as db:
               PayoutScheduler(db).run_due_payouts()

     Yields:
          Session: SQLAlchemy database session
     """
     session = SessionLocal()
     try:
          yield session
          session.commit()
     except Exception:
          session.rollback()
          raise
     finally:
          session.close()


def init_db(bind=None) -> None:
     """
     Create every engine table that is missing.

     Tests and local runs only; deployed databases are migrated with Alembic.
     """
     from models import Base
     Base.metadata.create_all(bind=bind or engine)


def check_connection() -> bool:
     """
     Round-trip a trivial query; used by the health route.
     """
     try:
          with engine.connect() as conn:
               conn.execute(text("SELECT 1"))
          return True
     except SQLAlchemyError as e:
          logger.error(f"Database connection failed: {e}")
          return False
