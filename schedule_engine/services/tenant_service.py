"""Tenant directory: businesses that own a tenant database."""

from typing import List

from sqlalchemy.orm import Session

from schedule_engine.core.exceptions import ValidationError
from schedule_engine.models.business import Business


class TenantService:
    """Reads and registers tenants in the platform database."""

    @staticmethod
    def list_tenants_with_id(db: Session) -> List[Business]:
        """All businesses that have a tenant id."""
        return (
            db.query(Business)
            .filter(Business.tenant_id.isnot(None))
            .order_by(Business.id.asc())
            .all()
        )

    @staticmethod
    def create(db: Session, name: str, tenant_id: str) -> Business:
        """Register a business with its tenant id."""
        if db.query(Business).filter(Business.tenant_id == tenant_id).first():
            raise ValidationError(f"Tenant {tenant_id} already exists")
        business = Business(name=name, tenant_id=tenant_id)
        db.add(business)
        db.commit()
        db.refresh(business)
        return business


tenant_service = TenantService()
