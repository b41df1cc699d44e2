"""
Loan lifecycle: issue, return and renew.

Each public method is one unit of work. The copy status, the transaction row,
the borrower record and the audit entry are written in the same database
transaction, and every status change is a compare-and-set, so two desks
racing for the same copy cannot both succeed.
"""

import logging
import uuid
from datetime import datetime

from .audit import Action, AuditLog
from .db import session_scope
from .errors import ConflictFailed, InvalidState, NotFound, ValidationFailed
from .models import (
    CopyStatus,
    ReturnCondition,
    Transaction,
    TransactionStatus,
)
from .policy import compute_due_date, duration_days, renewed_due_date
from .repositories import BookRepo, BorrowerRepo, CopyRepo, TransactionRepo
from .settings_store import SettingsStore

logger = logging.getLogger(__name__)

# Copy status after a return, and the audit action recorded for it
RETURN_OUTCOMES = {
    ReturnCondition.GOOD: (CopyStatus.AVAILABLE, Action.RETURNED),
    ReturnCondition.DAMAGED: (CopyStatus.DAMAGED, Action.RETURNED_DAMAGED),
    ReturnCondition.LOST: (CopyStatus.LOST, Action.MARKED_LOST),
}

MAX_BORROWER_ID_LENGTH = 100


def _text(value):
    return "" if value is None else str(value).strip()


def _required(value, what):
    if value is None or not str(value).strip():
        raise ValidationFailed(f"{what} is required")
    return str(value).strip()


def validate_borrower_id(borrower_id):
    borrower_id = _required(borrower_id, "Borrower ID")
    if any(ch.isspace() for ch in borrower_id):
        raise ValidationFailed("Borrower ID must not contain spaces", borrower_id=borrower_id)
    if len(borrower_id) > MAX_BORROWER_ID_LENGTH:
        raise ValidationFailed(
            f"Borrower ID must be at most {MAX_BORROWER_ID_LENGTH} characters",
            borrower_id=borrower_id,
        )
    return borrower_id


def coerce_condition(condition):
    if isinstance(condition, ReturnCondition):
        return condition
    try:
        return ReturnCondition(str(condition).upper())
    except ValueError:
        raise ValidationFailed(
            f"Unknown return condition {condition!r}", condition=condition
        ) from None


class CirculationEngine:
    def __init__(self, session_factory, settings_store=None, search_limit=5):
        self.Session = session_factory
        self.settings_store = settings_store or SettingsStore()
        self.search_limit = search_limit

    def _settings(self, session, settings):
        if settings is not None:
            return settings
        return self.settings_store.get(session)

    # ----------------- copy lookup -----------------

    def find_available_copies(self, query, require_lendable=False, limit=None):
        """
        Desk lookup: available copies whose id, title or ISBN contains the
        query. Returns (copy, book) pairs.
        """
        query = _text(query)
        if not query:
            return []
        with session_scope(self.Session) as session:
            rows = CopyRepo.search_available(
                session,
                query,
                require_lendable=require_lendable,
                limit=limit or self.search_limit,
            )
            return [(copy, book) for copy, book in rows]

    def _resolve_copy(self, session, copy_id, query, require_lendable):
        copy_id, term = _text(copy_id), _text(query)
        if bool(copy_id) == bool(term):
            raise ValidationFailed("Select the copy either by copy ID or by search")

        if copy_id:
            copy = CopyRepo.require(session, copy_id, lock=True)
        else:
            # a query naming an existing copy selects that copy and nothing else
            exact = CopyRepo.get(session, term, lock=True)
            if exact is not None:
                copy = exact
            else:
                matches = CopyRepo.search_available(
                    session, term, require_lendable=require_lendable, limit=2
                )
                if not matches:
                    raise NotFound(f"No available copy matches '{term}'", query=term)
                if len(matches) > 1:
                    raise ValidationFailed(
                        f"'{term}' matches more than one available copy; pick one by copy ID",
                        query=term,
                    )
                copy = CopyRepo.require(session, matches[0][0].id, lock=True)

        if copy.status != CopyStatus.AVAILABLE:
            raise InvalidState(
                f"Copy #{copy.id} is {copy.status.value}, not available",
                copy_id=copy.id,
                status=copy.status.value,
            )
        if require_lendable and copy.is_reference_only:
            raise InvalidState(
                f"Copy #{copy.id} is reference only and cannot be lent",
                copy_id=copy.id,
            )
        return copy

    # ----------------- loan lifecycle -----------------

    def issue_loan(
        self,
        borrower_id,
        borrower_name,
        lender_type,
        actor,
        copy_id=None,
        query=None,
        require_lendable=False,
        email=None,
        settings=None,
        now=None,
    ):
        """
        Lend one available copy to a borrower.

        The borrower is created if unknown, or has name/role updated in place
        if either changed. Due date = now + configured duration for the
        lender type (default duration when the type is not configured).
        """
        borrower_id = validate_borrower_id(borrower_id)
        borrower_name = _required(borrower_name, "Borrower name")
        lender_type = _required(lender_type, "Lender type")
        now = now or datetime.utcnow()

        with session_scope(self.Session) as session:
            copy = self._resolve_copy(session, copy_id, query, require_lendable)
            book = BookRepo.require(session, copy.book_id)
            settings = self._settings(session, settings)

            borrower, created = BorrowerRepo.upsert(
                session, borrower_id, borrower_name, lender_type, email=email
            )
            days = duration_days(settings, lender_type)
            due = compute_due_date(now, days)

            changed = CopyRepo.transition(
                session, [copy.id], [CopyStatus.AVAILABLE], CopyStatus.BORROWED
            )
            if changed != 1:
                logger.warning("Issue of copy %s lost a race", copy.id)
                raise ConflictFailed(
                    f"Copy #{copy.id} is no longer available", copy_id=copy.id
                )

            tx = TransactionRepo.create(
                session,
                Transaction(
                    id=str(uuid.uuid4()),
                    copy_id=copy.id,
                    book_id=book.id,
                    user_id=borrower.id,
                    user_name=borrower.name,
                    issue_date=now,
                    due_date=due,
                    status=TransactionStatus.ACTIVE,
                ),
            )
            AuditLog.append(
                session,
                actor,
                Action.BORROWED,
                f"Copy #{copy.id} issued to {borrower.name} ({borrower.role}). "
                f"Due: {due:%Y-%m-%d}",
                book=book,
                user_id=borrower.id,
                user_name=borrower.name,
                now=now,
            )

        logger.info(
            "Issued copy %s to %s (%s, new borrower=%s), due %s",
            tx.copy_id,
            tx.user_id,
            lender_type,
            created,
            tx.due_date.isoformat(),
        )
        return tx

    def complete_loan(self, transaction_id, condition, actor, now=None):
        """Close an active loan; the copy status follows the return condition."""
        condition = coerce_condition(condition)
        copy_status, action = RETURN_OUTCOMES[condition]
        now = now or datetime.utcnow()

        with session_scope(self.Session) as session:
            tx = TransactionRepo.require(session, transaction_id, lock=True)
            if tx.status != TransactionStatus.ACTIVE:
                raise InvalidState(
                    f"Transaction {tx.id} has already been returned",
                    transaction_id=tx.id,
                )
            CopyRepo.require(session, tx.copy_id, lock=True)

            if TransactionRepo.complete(session, tx.id, now, condition) != 1:
                raise ConflictFailed(
                    f"Transaction {tx.id} was closed by another request",
                    transaction_id=tx.id,
                )
            moved = CopyRepo.transition(
                session, [tx.copy_id], [CopyStatus.BORROWED], copy_status
            )
            if moved != 1:
                raise ConflictFailed(
                    f"Copy #{tx.copy_id} is not on loan", copy_id=tx.copy_id
                )
            session.refresh(tx)

            book = BookRepo.get(session, tx.book_id)
            AuditLog.append(
                session,
                actor,
                action,
                f"Copy #{tx.copy_id} returned by {tx.user_name}. Condition: {condition.value}.",
                book=book,
                user_id=tx.user_id,
                user_name=tx.user_name,
                now=now,
            )

        logger.info("Returned transaction %s as %s", tx.id, condition.value)
        return tx

    def renew_loan(self, transaction_id, actor, settings=None, now=None):
        """
        Push the due date forward by one full period for the borrower's
        current lender type, counted from the existing due date.
        """
        with session_scope(self.Session) as session:
            tx = TransactionRepo.require(session, transaction_id, lock=True)
            if tx.status != TransactionStatus.ACTIVE:
                raise InvalidState(
                    f"Transaction {tx.id} is returned and cannot be renewed",
                    transaction_id=tx.id,
                )
            settings = self._settings(session, settings)
            borrower = BorrowerRepo.get(session, tx.user_id)
            days = duration_days(settings, borrower.role if borrower else None)
            new_due = renewed_due_date(tx.due_date, days)

            if TransactionRepo.update_due_date(session, tx.id, new_due) != 1:
                raise ConflictFailed(
                    f"Transaction {tx.id} was closed by another request",
                    transaction_id=tx.id,
                )
            session.refresh(tx)

            book = BookRepo.get(session, tx.book_id)
            AuditLog.append(
                session,
                actor,
                Action.RENEWED,
                f"Loan renewed for {days} days. New due date: {new_due:%Y-%m-%d}.",
                book=book,
                user_id=tx.user_id,
                user_name=tx.user_name,
                now=now,
            )

        logger.info("Renewed transaction %s until %s", tx.id, tx.due_date.isoformat())
        return tx
