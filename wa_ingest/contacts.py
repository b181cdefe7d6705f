"""
Contact registry: one row per WhatsApp address.
"""

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wa_ingest.models import Contact
from wa_ingest.storage import StorageError
from wa_ingest.utils import utc_now

logger = logging.getLogger(__name__)


def _clean_name(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    name = name.strip()
    return name or None


def upsert_contact(db: Session, address: str, display_name: Optional[str] = None) -> Contact:
    """
    Create or touch the contact for an address (atomic, idempotent).

    A single INSERT ... ON CONFLICT(wa_id) DO UPDATE statement, so concurrent
    calls for one address converge on a single row. On conflict the stored
    name is replaced only by a non-empty display_name, never cleared.

    Args:
        db: Database session
        address: External address (wa_id)
        display_name: Profile name seen alongside the message, if any

    Returns:
        The converged Contact row

    Raises:
        StorageError: on any database failure
    """
    name = _clean_name(display_name)
    now = utc_now()
    logger.debug(f"Upserting contact: wa_id={address}, name={name}")

    stmt = sqlite_insert(Contact).values(
        wa_id=address,
        name=name,
        phone_number=address,
        first_seen_at=now,
        last_message_at=now,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Contact.wa_id],
        set_={
            "name": func.coalesce(stmt.excluded.name, Contact.name),
            "last_message_at": stmt.excluded.last_message_at,
            "updated_at": stmt.excluded.updated_at,
        },
    )

    try:
        db.execute(stmt)
        db.commit()
        contact = db.query(Contact).filter(Contact.wa_id == address).one()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to upsert contact {address}: {e}")
        raise StorageError(f"contact upsert failed for {address}") from e

    logger.info(f"Contact upserted: wa_id={address}, id={contact.id}")
    return contact


def get_contact(db: Session, address: str) -> Optional[Contact]:
    """Look up a contact by address; None when unknown."""
    return db.query(Contact).filter(Contact.wa_id == address).first()
