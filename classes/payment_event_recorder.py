# classes/payment_event_recorder.py

from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from classes.entities import StripeEvent


def was_processed(session_factory: sessionmaker, event_id: str) -> bool:
    """
    True when this Stripe event id was already applied successfully.
    FAILED events are retried by Stripe and must be processed again.
    """
    session: Session = session_factory()
    try:
        row = session.get(StripeEvent, str(event_id))
        return row is not None and row.status == "PROCESSED"
    finally:
        session.close()


def record_stripe_event(
    session_factory: sessionmaker,
    *,
    event_id: str,
    event_type: str,
    status: str = "PROCESSED",
    error_message: Optional[str] = None,
) -> str:
    """
    Upsert the StripeEvent row for event_id and return the key.
    """
    session: Session = session_factory()
    try:
        session.merge(StripeEvent(
            event_id=str(event_id),
            event_type=event_type,
            status=status,
            error_message=error_message,
        ))
        session.commit()
        return str(event_id)
    finally:
        session.close()
