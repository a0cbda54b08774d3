from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func

from database.session import Base


class WebhookEvent(Base):
    """
    Log audytu webhooków orders/paid.
    Nigdy nie zawiera kodów kart ani surowego payloadu – tylko zamaskowane referencje.
    """
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, nullable=False, index=True)  # np. 'orders_paid'
    status = Column(String, nullable=False, index=True)      # np. 'done', 'already_done', 'issuance_failed'
    message = Column(String, nullable=True)

    order_id = Column(String, nullable=True, index=True)
    order_name = Column(String, nullable=True, index=True)

    codes_issued = Column(Integer, nullable=False, default=0)
    reference_nos = Column(String, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
