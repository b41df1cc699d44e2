import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from .models import Log, StaffRole

logger = logging.getLogger(__name__)


class Action:
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    RETURNED_DAMAGED = "RETURNED_DAMAGED"
    MARKED_LOST = "MARKED_LOST"
    RENEWED = "RENEWED"
    BOOK_CREATED = "BOOK_CREATED"
    BOOK_UPDATED = "BOOK_UPDATED"
    BOOK_DELETED = "BOOK_DELETED"
    COPIES_ADDED = "COPIES_ADDED"
    COPIES_WITHDRAWN = "COPIES_WITHDRAWN"
    COPY_UPDATED = "COPY_UPDATED"
    COPY_DELETED = "COPY_DELETED"
    SETTING_RENAMED = "SETTING_RENAMED"


@dataclass(frozen=True)
class Actor:
    """The staff member performing an operation."""

    staff_id: str
    staff_name: str
    role: StaffRole = StaffRole.LIBRARIAN

    @classmethod
    def from_staff(cls, staff):
        return cls(staff_id=staff.id, staff_name=staff.name, role=staff.role)


class AuditLog:
    @staticmethod
    def append(
        session,
        actor,
        action,
        description,
        book=None,
        user_id=None,
        user_name=None,
        now=None,
    ):
        """
        Add one audit entry to the caller's transaction, so the entry is
        committed with the change it describes or not at all.
        """
        entry = Log(
            id=str(uuid.uuid4()),
            book_id=book.id if book is not None else None,
            book_title=book.title if book is not None else None,
            action=action,
            description=description,
            timestamp=now or datetime.utcnow(),
            user_id=user_id,
            user_name=user_name,
            staff_id=actor.staff_id,
            staff_name=actor.staff_name,
        )
        session.add(entry)
        session.flush()
        logger.info("AUDIT %s by %s: %s", action, actor.staff_id, description)
        return entry

    @staticmethod
    def list(session, book_id=None, limit=None):
        """Entries newest first, optionally for one book."""
        q = select(Log).order_by(Log.timestamp.desc(), Log.id)
        if book_id:
            q = q.where(Log.book_id == book_id)
        if limit:
            q = q.limit(limit)
        return session.execute(q).scalars().all()

