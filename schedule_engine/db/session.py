"""Database engines per tenant, session factories, and dependency injection."""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from schedule_engine.core.config import settings
from schedule_engine.core.context import current_tenant_id

logger = logging.getLogger("schedule_engine.db")


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {
        "pool_size": 20,
        "max_overflow": 80,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
        "echo": settings.DEBUG,
    }


class TenantDatabaseManager:
    """Lazily creates and caches one engine per tenant database.

    The platform database (``tenant_id=None``) holds the tenant directory
    and platform-level schedules; every tenant has its own database built
    from ``TENANT_DATABASE_URL_TEMPLATE``.
    """

    def __init__(
        self,
        platform_url: Optional[str] = None,
        tenant_url_template: Optional[str] = None,
    ):
        self.platform_url = platform_url or settings.MYSQL_URL
        self.tenant_url_template = tenant_url_template or settings.TENANT_DATABASE_URL_TEMPLATE
        self._engines: Dict[Optional[str], Engine] = {}
        self._factories: Dict[Optional[str], sessionmaker] = {}
        self._lock = threading.Lock()

    def url_for(self, tenant_id: Optional[str]) -> str:
        if tenant_id is None:
            return self.platform_url
        return self.tenant_url_template.format(tenant_id=tenant_id)

    def get_engine(self, tenant_id: Optional[str] = None) -> Engine:
        with self._lock:
            engine = self._engines.get(tenant_id)
            if engine is None:
                url = self.url_for(tenant_id)
                engine = create_engine(url, **_engine_kwargs(url))
                self._engines[tenant_id] = engine
                self._factories[tenant_id] = sessionmaker(
                    autocommit=False, autoflush=False, bind=engine
                )
                logger.info(
                    "Opened database engine for %s",
                    f"tenant {tenant_id}" if tenant_id else "platform",
                )
            return engine

    def session(self, tenant_id: Optional[str] = None) -> Session:
        self.get_engine(tenant_id)
        return self._factories[tenant_id]()

    def init_schema(self, tenant_id: Optional[str] = None) -> None:
        """Create all tables in the tenant (or platform) database."""
        from schedule_engine.db.base import Base
        import schedule_engine.models  # noqa: F401  (registers the tables)

        Base.metadata.create_all(self.get_engine(tenant_id))

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
            self._factories.clear()


database_manager = TenantDatabaseManager()


@contextmanager
def tenant_session(tenant_id: Optional[str] = None) -> Iterator[Session]:
    """Session on the given tenant's database, or the bound tenant when omitted."""
    db = database_manager.session(tenant_id if tenant_id is not None else current_tenant_id())
    try:
        yield db
    finally:
        db.close()

