"""
Due-date arithmetic for loans.

All comparisons happen on calendar dates: a loan due at 23:59 yesterday and
one due at 00:01 yesterday are both exactly one day overdue today.
"""

from datetime import date, datetime, timedelta

from .models import TransactionStatus

DEFAULT_LOAN_DAYS = 14


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def today_utc() -> date:
    return datetime.utcnow().date()


def duration_days(settings, lender_type) -> int:
    """Configured loan length for a lender type, or the default when unconfigured."""
    if settings is None:
        return DEFAULT_LOAN_DAYS
    configured = settings.lender_type(lender_type)
    if configured is not None:
        return configured.duration
    return settings.default_loan_days


def compute_due_date(issued_at: datetime, days: int) -> datetime:
    return issued_at + timedelta(days=days)


def renewed_due_date(current_due: datetime, days: int) -> datetime:
    # extends from the old due date, not from the renewal time
    return current_due + timedelta(days=days)


def days_overdue(due, today=None) -> int:
    """Positive when late, 0 when due today, negative when due in the future."""
    today = _as_date(today) if today is not None else today_utc()
    return (today - _as_date(due)).days


def is_overdue(transaction, today=None) -> bool:
    if transaction.status != TransactionStatus.ACTIVE:
        return False
    return days_overdue(transaction.due_date, today) > 0


def is_due_within(due, days, today=None) -> bool:
    """Due between today and today + days, both inclusive. Late loans do not match."""
    today = _as_date(today) if today is not None else today_utc()
    return today <= _as_date(due) <= today + timedelta(days=days)


def issued_between(issued_at, start=None, end=None) -> bool:
    issued = _as_date(issued_at)
    if start is not None and issued < _as_date(start):
        return False
    if end is not None and issued > _as_date(end):
        return False
    return True
