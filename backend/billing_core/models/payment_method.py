"""PaymentMethod model for storing customer payment methods."""


from sqlalchemy import Boolean, Column, DateTime, String, func

from billing_core.core.database import Base
from billing_core.models.shared import UUIDType, generate_uuid


class PaymentMethod(Base):
    """PaymentMethod model - saved payment methods charged on renewal."""

    __tablename__ = "payment_methods"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    customer_id = Column(UUIDType, nullable=False, index=True)

    # Provider info
    provider = Column(String(50), nullable=False)  # stripe / mercadopago / manual
    provider_payment_method_id = Column(String(255), nullable=False)

    type = Column(String(50), nullable=False, default="card")
    is_default = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
