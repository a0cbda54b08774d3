import logging
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database import session as db_session
from database.models import WebhookEvent

logger = logging.getLogger("giftcard-webhook")


def log_webhook_event(
    status: str,
    message: str,
    order_id: Optional[str] = None,
    order_name: Optional[str] = None,
    codes_issued: int = 0,
    masked_references: Sequence[str] = (),
    event_type: str = "orders_paid",
) -> None:
    """
    Zapisuje log webhooka w tabeli webhook_events.
    Bez skonfigurowanej bazy nic nie robi; błędy zapisu nie blokują obsługi webhooka.
    """
    if db_session.SessionLocal is None:
        return

    db = db_session.SessionLocal()
    try:
        db.add(
            WebhookEvent(
                event_type=event_type,
                status=status,
                message=(message or "")[:500],
                order_id=order_id,
                order_name=order_name,
                codes_issued=codes_issued,
                reference_nos="\n".join(masked_references) or None,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Nie udało się zapisać logu webhooka: %s", e)
    finally:
        db.close()


def list_webhook_events(limit: int = 50, order_id: Optional[str] = None) -> List[WebhookEvent]:
    """Ostatnie wpisy logu, od najnowszych."""
    if db_session.SessionLocal is None:
        return []

    db = db_session.SessionLocal()
    try:
        stmt = select(WebhookEvent).order_by(WebhookEvent.id.desc()).limit(limit)
        if order_id:
            stmt = stmt.where(WebhookEvent.order_id == order_id)
        return list(db.execute(stmt).scalars().all())
    finally:
        db.close()
