"""
Row-level access to books, copies, transactions, borrowers and staff.

Every method takes the caller's session so that a whole circulation operation
shares one database transaction. Status changes go through compare-and-set
updates (`... WHERE status IN (...)`) and report how many rows they touched;
a short count means a concurrent request got there first.
"""

from sqlalchemy import func, or_, select, update

from .errors import NotFound, ValidationFailed
from .models import (
    Book,
    Borrower,
    Copy,
    CopyStatus,
    StaffUser,
    Transaction,
    TransactionStatus,
)


def _select(model, lock):
    q = select(model)
    if lock:
        q = q.with_for_update()
    return q


def _contains(text):
    """ILIKE pattern matching `text` literally anywhere in a column."""
    escaped = text.strip()
    for ch in ("\\", "%", "_"):
        escaped = escaped.replace(ch, "\\" + ch)
    return f"%{escaped}%"


class BookRepo:
    @staticmethod
    def get(session, book_id, lock=False):
        q = _select(Book, lock).where(Book.id == book_id)
        return session.execute(q).scalar_one_or_none()

    @staticmethod
    def require(session, book_id, lock=False):
        book = BookRepo.get(session, book_id, lock=lock)
        if not book:
            raise NotFound(f"Book {book_id} not found", book_id=book_id)
        return book

    @staticmethod
    def list_all(session):
        return session.execute(select(Book).order_by(Book.title)).scalars().all()

    @staticmethod
    def titles(session, book_ids):
        if not book_ids:
            return {}
        rows = session.execute(
            select(Book.id, Book.title).where(Book.id.in_(set(book_ids)))
        ).all()
        return {book_id: title for book_id, title in rows}

    @staticmethod
    def search(session, text):
        like = _contains(text)
        q = select(Book).where(
            or_(Book.title.ilike(like, escape="\\"), Book.isbn.ilike(like, escape="\\"))
        ).order_by(Book.title)
        return session.execute(q).scalars().all()

    @staticmethod
    def upsert(session, book):
        merged = session.merge(book)
        session.flush()
        return merged

    @staticmethod
    def delete(session, book):
        session.delete(book)
        session.flush()


class CopyRepo:
    @staticmethod
    def get(session, copy_id, lock=False):
        q = _select(Copy, lock).where(Copy.id == copy_id)
        return session.execute(q).scalar_one_or_none()

    @staticmethod
    def require(session, copy_id, lock=False):
        copy = CopyRepo.get(session, copy_id, lock=lock)
        if not copy:
            raise NotFound(f"Copy #{copy_id} not found", copy_id=copy_id)
        return copy

    @staticmethod
    def get_many(session, copy_ids, lock=False):
        q = _select(Copy, lock).where(Copy.id.in_(set(copy_ids)))
        return session.execute(q).scalars().all()

    @staticmethod
    def list_by_book(session, book_id):
        q = select(Copy).where(Copy.book_id == book_id).order_by(Copy.added_date, Copy.id)
        return session.execute(q).scalars().all()

    @staticmethod
    def list_all(session):
        return session.execute(select(Copy).order_by(Copy.book_id, Copy.id)).scalars().all()

    @staticmethod
    def search_available(session, text, require_lendable=False, limit=None):
        """
        Available copies whose id, book title or ISBN contains `text`
        (case-insensitive), joined with their book.
        """
        like = _contains(text)
        q = (
            select(Copy, Book)
            .join(Book, Book.id == Copy.book_id)
            .where(Copy.status == CopyStatus.AVAILABLE)
            .where(
                or_(
                    Copy.id.ilike(like, escape="\\"),
                    Book.title.ilike(like, escape="\\"),
                    Book.isbn.ilike(like, escape="\\"),
                )
            )
            .order_by(Book.title, Copy.id)
        )
        if require_lendable:
            q = q.where(Copy.is_reference_only.is_(False))
        if limit:
            q = q.limit(limit)
        return session.execute(q).all()

    @staticmethod
    def exists(session, copy_id):
        q = select(func.count()).select_from(Copy).where(Copy.id == copy_id)
        return session.execute(q).scalar_one() > 0

    @staticmethod
    def upsert(session, copy):
        merged = session.merge(copy)
        session.flush()
        return merged

    @staticmethod
    def delete(session, copy):
        """Hard delete. Refused while any transaction references the copy."""
        if TransactionRepo.has_history(session, copy.id):
            raise ValidationFailed(
                "Cannot permanently delete a copy with transaction history.",
                copy_id=copy.id,
            )
        session.delete(copy)
        session.flush()

    @staticmethod
    def transition(session, copy_ids, from_statuses, to_status, **values):
        """
        Move copies to `to_status` only if they are still in one of
        `from_statuses`. Returns the number of rows changed.
        """
        q = (
            update(Copy)
            .where(Copy.id.in_(list(copy_ids)))
            .where(Copy.status.in_(list(from_statuses)))
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return session.execute(q).rowcount


class TransactionRepo:
    @staticmethod
    def get(session, transaction_id, lock=False):
        q = _select(Transaction, lock).where(Transaction.id == transaction_id)
        return session.execute(q).scalar_one_or_none()

    @staticmethod
    def require(session, transaction_id, lock=False):
        tx = TransactionRepo.get(session, transaction_id, lock=lock)
        if not tx:
            raise NotFound(
                f"Transaction {transaction_id} not found", transaction_id=transaction_id
            )
        return tx

    @staticmethod
    def list_active(session):
        q = (
            select(Transaction)
            .where(Transaction.status == TransactionStatus.ACTIVE)
            .order_by(Transaction.due_date)
        )
        return session.execute(q).scalars().all()

    @staticmethod
    def list_by_user(session, user_id):
        q = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.issue_date.desc())
        )
        return session.execute(q).scalars().all()

    @staticmethod
    def list_by_copy(session, copy_id):
        q = (
            select(Transaction)
            .where(Transaction.copy_id == copy_id)
            .order_by(Transaction.issue_date.desc())
        )
        return session.execute(q).scalars().all()

    @staticmethod
    def has_history(session, copy_id):
        q = select(func.count()).select_from(Transaction).where(
            Transaction.copy_id == copy_id
        )
        return session.execute(q).scalar_one() > 0

    @staticmethod
    def create(session, tx):
        session.add(tx)
        session.flush()
        return tx

    @staticmethod
    def update_due_date(session, transaction_id, due_date):
        q = (
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .where(Transaction.status == TransactionStatus.ACTIVE)
            .values(due_date=due_date)
            .execution_options(synchronize_session=False)
        )
        return session.execute(q).rowcount

    @staticmethod
    def complete(session, transaction_id, return_date, return_condition):
        q = (
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .where(Transaction.status == TransactionStatus.ACTIVE)
            .values(
                status=TransactionStatus.RETURNED,
                return_date=return_date,
                return_condition=return_condition,
            )
            .execution_options(synchronize_session=False)
        )
        return session.execute(q).rowcount


class BorrowerRepo:
    @staticmethod
    def get(session, borrower_id, lock=False):
        q = _select(Borrower, lock).where(Borrower.id == borrower_id)
        return session.execute(q).scalar_one_or_none()

    @staticmethod
    def list_all(session):
        return session.execute(select(Borrower).order_by(Borrower.name)).scalars().all()

    @staticmethod
    def roles(session, borrower_ids):
        if not borrower_ids:
            return {}
        rows = session.execute(
            select(Borrower.id, Borrower.role).where(Borrower.id.in_(set(borrower_ids)))
        ).all()
        return {borrower_id: role for borrower_id, role in rows}

    @staticmethod
    def upsert(session, borrower_id, name, role, email=None):
        """
        Create the borrower if unknown, otherwise update name/role in place
        when either changed. Returns (borrower, created).
        """
        borrower = BorrowerRepo.get(session, borrower_id, lock=True)
        if borrower is None:
            borrower = Borrower(id=borrower_id, name=name, role=role, email=email)
            session.add(borrower)
            session.flush()
            return borrower, True

        if borrower.name != name or borrower.role != role:
            borrower.name = name
            borrower.role = role
        if email:
            borrower.email = email
        session.flush()
        return borrower, False


class StaffRepo:
    @staticmethod
    def get(session, staff_id, lock=False):
        q = _select(StaffUser, lock).where(StaffUser.id == staff_id)
        return session.execute(q).scalar_one_or_none()

    @staticmethod
    def require(session, staff_id, lock=False):
        staff = StaffRepo.get(session, staff_id, lock=lock)
        if not staff:
            raise NotFound(f"Staff member {staff_id} not found", staff_id=staff_id)
        return staff

    @staticmethod
    def list_all(session):
        return session.execute(select(StaffUser).order_by(StaffUser.name)).scalars().all()

    @staticmethod
    def add(session, staff):
        session.add(staff)
        session.flush()
        return staff
