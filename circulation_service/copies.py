"""
Copy administration outside the loan path: adding copies, withdrawal,
permanent deletion and the manual status override.
"""

import logging
import random
from collections import OrderedDict
from datetime import datetime

from .audit import Action, AuditLog
from .db import session_scope
from .errors import ConflictFailed, InvalidState, NotFound, ValidationFailed
from .models import ACTIONABLE_STATUSES, Copy, CopyStatus
from .repositories import BookRepo, CopyRepo, TransactionRepo

logger = logging.getLogger(__name__)

MAX_COPIES_PER_BATCH = 500


def _plural(count):
    return "copy" if count == 1 else "copies"


def is_actionable(copy):
    """Only available or already withdrawn copies may be withdrawn or deleted."""
    return copy.status in ACTIONABLE_STATUSES


def generate_copy_id(session, attempts=20):
    """Random 6-digit barcode not used by any existing copy."""
    for _ in range(attempts):
        candidate = str(random.randint(100000, 999999))
        if not CopyRepo.exists(session, candidate):
            return candidate
    raise ConflictFailed("Could not allocate a free copy number, try again")


class CopyService:
    def __init__(self, session_factory):
        self.Session = session_factory

    def list_copies(self, book_id=None):
        with session_scope(self.Session) as session:
            if book_id:
                return CopyRepo.list_by_book(session, book_id)
            return CopyRepo.list_all(session)

    def get_copy(self, copy_id):
        with session_scope(self.Session) as session:
            return CopyRepo.require(session, copy_id)

    def history(self, copy_id):
        with session_scope(self.Session) as session:
            CopyRepo.require(session, copy_id)
            return TransactionRepo.list_by_copy(session, copy_id)

    def add_copies(self, book_id, count, actor, copy_ids=None, is_reference_only=False, now=None):
        """
        Add new AVAILABLE copies to a book, either with generated barcodes
        or with the given ids (which must not exist yet).
        """
        now = now or datetime.utcnow()
        if copy_ids:
            copy_ids = [str(c).strip() for c in copy_ids]
            if any(not c for c in copy_ids):
                raise ValidationFailed("Copy IDs must not be empty")
            if len(set(copy_ids)) != len(copy_ids):
                raise ValidationFailed("Copy IDs must be unique")
            count = len(copy_ids)
        try:
            count = int(count)
        except (TypeError, ValueError):
            raise ValidationFailed("Please enter a valid number of copies") from None
        if count < 1 or count > MAX_COPIES_PER_BATCH:
            raise ValidationFailed(
                f"Number of copies must be between 1 and {MAX_COPIES_PER_BATCH}"
            )

        with session_scope(self.Session) as session:
            book = BookRepo.require(session, book_id)
            created = []
            for i in range(count):
                if copy_ids:
                    copy_id = copy_ids[i]
                    if CopyRepo.exists(session, copy_id):
                        raise ValidationFailed(
                            f"Copy #{copy_id} already exists", copy_id=copy_id
                        )
                else:
                    copy_id = generate_copy_id(session)
                copy = CopyRepo.upsert(
                    session,
                    Copy(
                        id=copy_id,
                        book_id=book.id,
                        status=CopyStatus.AVAILABLE,
                        added_date=now,
                        is_reference_only=is_reference_only,
                    ),
                )
                created.append(copy)

            AuditLog.append(
                session,
                actor,
                Action.COPIES_ADDED,
                f"{count} new physical {_plural(count)} added to inventory.",
                book=book,
                now=now,
            )

        logger.info("Added %s copies to book %s", count, book_id)
        return created

    def withdraw_copies(self, copy_ids, reason, actor, remarks="", now=None):
        """
        Withdraw one or more copies from circulation. All-or-nothing: if any
        copy is borrowed, lost or damaged, none are withdrawn.
        """
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationFailed("Please select a reason for withdrawal")
        copy_ids = list(OrderedDict.fromkeys(str(c).strip() for c in copy_ids or []))
        if not copy_ids:
            raise ValidationFailed("No copies selected for withdrawal")
        narration = f"[{reason}] {str(remarks or '').strip()}".strip()
        now = now or datetime.utcnow()

        with session_scope(self.Session) as session:
            copies = {c.id: c for c in CopyRepo.get_many(session, copy_ids, lock=True)}
            missing = [c for c in copy_ids if c not in copies]
            if missing:
                raise NotFound(
                    f"Copy #{missing[0]} not found", copy_ids=missing
                )
            blocked = [copies[c] for c in copy_ids if not is_actionable(copies[c])]
            if blocked:
                first = blocked[0]
                raise InvalidState(
                    f"Cannot withdraw copy #{first.id} while it is {first.status.value}.",
                    copy_ids=[c.id for c in blocked],
                )

            changed = CopyRepo.transition(
                session,
                copy_ids,
                ACTIONABLE_STATUSES,
                CopyStatus.WITHDRAWN,
                narration=narration,
            )
            if changed != len(copy_ids):
                raise ConflictFailed(
                    "Some copies changed status while being withdrawn; nothing was withdrawn"
                )

            by_book = OrderedDict()
            for copy_id in copy_ids:
                by_book.setdefault(copies[copy_id].book_id, []).append(copy_id)
            for book_id, ids in by_book.items():
                book = BookRepo.get(session, book_id)
                AuditLog.append(
                    session,
                    actor,
                    Action.COPIES_WITHDRAWN,
                    f"{len(ids)} {_plural(len(ids))} ({', '.join(ids)}) withdrawn. "
                    f"Reason: {reason}",
                    book=book,
                    now=now,
                )
            for copy in copies.values():
                session.refresh(copy)

        logger.info("Withdrew copies %s: %s", ", ".join(copy_ids), narration)
        return [copies[c] for c in copy_ids]

    def purge_copy(self, copy_id, actor, now=None):
        """Permanently delete a copy that has never been lent."""
        with session_scope(self.Session) as session:
            copy = CopyRepo.require(session, copy_id, lock=True)
            book = BookRepo.get(session, copy.book_id)
            CopyRepo.delete(session, copy)
            AuditLog.append(
                session,
                actor,
                Action.COPY_DELETED,
                f"Copy #{copy_id} permanently deleted from records.",
                book=book,
                now=now,
            )
        logger.info("Purged copy %s", copy_id)

    def manage_copy(
        self,
        copy_id,
        actor,
        status=None,
        is_reference_only=None,
        narration=None,
        now=None,
    ):
        """
        Administrative override of status, reference flag and narration.

        A borrowed copy keeps its status until it comes back through the
        return path, and BORROWED cannot be set by hand.
        """
        if status is not None and not isinstance(status, CopyStatus):
            try:
                status = CopyStatus(str(status).upper())
            except ValueError:
                raise ValidationFailed(f"Unknown copy status {status!r}") from None

        with session_scope(self.Session) as session:
            copy = CopyRepo.require(session, copy_id, lock=True)
            current = copy.status
            target = status or current

            if current == CopyStatus.BORROWED and target != CopyStatus.BORROWED:
                raise InvalidState(
                    f"Copy #{copy.id} is on loan; return it through circulation first",
                    copy_id=copy.id,
                )
            if target == CopyStatus.BORROWED and current != CopyStatus.BORROWED:
                raise InvalidState(
                    "Copies can only become BORROWED by issuing a loan", copy_id=copy.id
                )

            if narration is None:
                narration = copy.narration
            narration = str(narration or "").strip() or None
            if target == CopyStatus.WITHDRAWN and not narration:
                raise ValidationFailed("Please provide a reason for withdrawal", copy_id=copy.id)

            if target != current:
                if CopyRepo.transition(session, [copy.id], [current], target) != 1:
                    raise ConflictFailed(
                        f"Copy #{copy.id} changed status concurrently", copy_id=copy.id
                    )
                session.refresh(copy)
            copy.narration = narration
            if is_reference_only is not None:
                copy.is_reference_only = bool(is_reference_only)
            session.flush()

            book = BookRepo.get(session, copy.book_id)
            ref = " [Ref Only]" if copy.is_reference_only else ""
            if target != current:
                summary = f"Copy #{copy.id} status changed to {target.value}."
            else:
                summary = f"Copy #{copy.id} details updated."
            AuditLog.append(
                session,
                actor,
                Action.COPY_UPDATED,
                f"{summary}{ref}",
                book=book,
                now=now,
            )

        logger.info("Updated copy %s: %s -> %s", copy_id, current.value, target.value)
        return copy
