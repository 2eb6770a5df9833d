"""Business model: the tenant directory kept in the platform database."""

from sqlalchemy import Column, Integer, String, func

from schedule_engine.db.base import Base, UTCDateTime


class Business(Base):
    """A customer business. Rows with a ``tenant_id`` own a tenant database."""
    __tablename__ = "businesses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    tenant_id = Column(String(36), nullable=True, unique=True)
    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
