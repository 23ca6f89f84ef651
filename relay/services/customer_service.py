"""Customer lookups used by the pipeline. Customer CRUD lives elsewhere."""

import uuid
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from relay.models import Customer, Operator


def get_default_operator_id(db: Session) -> Optional[uuid.UUID]:
    """First admin operator; new customers are assigned to it."""
    return (
        db.query(Operator.id)
        .filter(Operator.is_admin.is_(True))
        .order_by(Operator.created_at)
        .limit(1)
        .scalar()
    )


def get_customer(db: Session, customer_id) -> Optional[Customer]:
    return db.query(Customer).filter(Customer.id == customer_id).first()


def get_customer_by_whatsapp_id(db: Session, whatsapp_id: str) -> Optional[Customer]:
    return db.query(Customer).filter(Customer.whatsapp_id == whatsapp_id).first()


def get_or_create_customer(db: Session, whatsapp_id: str, name: Optional[str] = None) -> Customer:
    customer = get_customer_by_whatsapp_id(db, whatsapp_id)
    if customer:
        if name and not customer.name:
            customer.name = name
        return customer

    stmt = (
        insert(Customer)
        .values(
            id=uuid.uuid4(),
            whatsapp_id=whatsapp_id,
            phone_number=f"+{whatsapp_id.lstrip('+')}",
            name=name,
            assigned_operator_id=get_default_operator_id(db),
        )
        .on_conflict_do_nothing(index_elements=["whatsapp_id"])
    )
    db.execute(stmt)
    # a concurrent webhook may have inserted the same customer first
    return db.query(Customer).filter(Customer.whatsapp_id == whatsapp_id).one()


def resolve_operator_id(db: Session, customer_id) -> Optional[uuid.UUID]:
    """Operator currently assigned to the customer; read fresh on every call."""
    return db.query(Customer.assigned_operator_id).filter(Customer.id == customer_id).scalar()
