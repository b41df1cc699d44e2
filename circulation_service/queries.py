"""Read-side views over active loans for the circulation desk."""

from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from .models import Transaction
from .policy import days_overdue, is_due_within, issued_between, today_utc
from .repositories import BookRepo, BorrowerRepo, TransactionRepo

UNKNOWN_ROLE = "Unknown"


@dataclass
class ActiveLoanFilter:
    """
    Optional, independent filters. Every filter that is set must match.

    due_within_days keeps loans due between today and today + N (inclusive);
    loans that are already late are not part of that window.
    """

    search: str = ""
    lender_type: Optional[str] = None
    issued_from: Optional[date] = None
    issued_to: Optional[date] = None
    due_within_days: Optional[int] = None

    def is_empty(self):
        return not (
            (self.search or "").strip()
            or self.lender_type
            or self.issued_from
            or self.issued_to
            or self.due_within_days is not None
        )


@dataclass
class ActiveLoanView:
    transaction: Transaction
    book_title: str
    borrower_role: str
    days_overdue: int

    @property
    def is_overdue(self):
        return self.days_overdue > 0


def _views(session, transactions, today) -> List[ActiveLoanView]:
    titles = BookRepo.titles(session, [t.book_id for t in transactions])
    roles = BorrowerRepo.roles(session, [t.user_id for t in transactions])
    return [
        ActiveLoanView(
            transaction=t,
            book_title=titles.get(t.book_id, ""),
            borrower_role=roles.get(t.user_id, UNKNOWN_ROLE),
            days_overdue=days_overdue(t.due_date, today),
        )
        for t in transactions
    ]


def _matches(view, loan_filter, today):
    t = view.transaction
    term = (loan_filter.search or "").strip().lower()
    if term and not (
        term in t.user_id.lower()
        or term in t.user_name.lower()
        or term in t.copy_id.lower()
        or term in view.book_title.lower()
    ):
        return False
    if loan_filter.lender_type and view.borrower_role != loan_filter.lender_type:
        return False
    if not issued_between(t.issue_date, loan_filter.issued_from, loan_filter.issued_to):
        return False
    if loan_filter.due_within_days is not None and not is_due_within(
        t.due_date, loan_filter.due_within_days, today
    ):
        return False
    return True


def list_active_loans(session, loan_filter=None, today=None) -> List[ActiveLoanView]:
    """Active loans matching the filter, soonest due first."""
    today = today or today_utc()
    loan_filter = loan_filter or ActiveLoanFilter()
    views = _views(session, TransactionRepo.list_active(session), today)
    if not loan_filter.is_empty():
        views = [v for v in views if _matches(v, loan_filter, today)]
    return sorted(views, key=lambda v: (v.transaction.due_date, v.transaction.issue_date))


def list_overdue_loans(session, today=None) -> List[ActiveLoanView]:
    """Late loans, most days overdue first."""
    return [v for v in list_active_loans(session, today=today) if v.is_overdue]


def borrower_history(session, borrower_id):
    """Every loan of one borrower, newest first."""
    return TransactionRepo.list_by_user(session, borrower_id)
