import logging

from sqlalchemy import JSON, create_engine, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from app.core.config import settings

# -----------------------
# Logging setup
# -----------------------
logger = logging.getLogger(__name__)

# -----------------------
# Database URL
# -----------------------
DATABASE_URL = settings.database_url
IS_SQLITE = settings.db_connection == "sqlite"

# Hide password in logs
safe_db_url = (
    DATABASE_URL.replace(settings.db_password, "****")
    if settings.db_password and not IS_SQLITE
    else DATABASE_URL
)
logger.info(f"Connecting to database: {safe_db_url}")

# -----------------------
# SQLAlchemy engine
# -----------------------
if IS_SQLITE:
    # check_same_thread=False is needed only for SQLite with multiple threads
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        echo=settings.debug,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        connect_args={"connect_timeout": 5},
    )


# -----------------------
# Keep every connection on UTC
# -----------------------
@event.listens_for(engine, "connect")
def set_timezone(dbapi_conn, connection_record):
    if IS_SQLITE:
        return
    cursor = dbapi_conn.cursor()
    cursor.execute(f"SET timezone='{settings.timezone}'")
    cursor.close()


# -----------------------
# Session and Base
# -----------------------
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# -----------------------
# Dependency for FastAPI
# -----------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error occurred: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


# -----------------------
# JSON column type (JSONB on PostgreSQL)
# -----------------------
JSONDocument = JSON().with_variant(JSONB(), "postgresql")
