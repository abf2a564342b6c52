"""Database engine and session factory configuration."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.packages.drive.core.config import Settings, get_settings

settings = get_settings()


def build_connect_args(settings: Settings) -> dict:
    """为每条语句设置有界超时：PostgreSQL 用 statement_timeout，SQLite 用锁等待超时。"""
    url = settings.sql_database_url
    timeout_ms = max(int(settings.database_statement_timeout_ms), 0)
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_ms / 1000}
    if url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={timeout_ms}"}
    return {}


# ``pool_pre_ping`` keeps the connection pool healthy; ``echo`` mirrors SQL logs
# when enabled in settings for easier debugging.
engine = create_engine(
    settings.sql_database_url,
    pool_pre_ping=True,
    echo=settings.database_echo,
    connect_args=build_connect_args(settings),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
