from datetime import date, datetime

import pytest

from circulation_service.queries import ActiveLoanFilter

TODAY = date(2024, 3, 10)


@pytest.fixture
def loans(library, book, actor):
    library.copies.add_copies(book.id, 4, actor, copy_ids=["C1", "C2", "C3", "C4"])
    issue = library.circulation.issue_loan
    old = issue("S1", "Alice", "Student", actor, copy_id="C4", now=datetime(2024, 1, 5, 9, 0))
    library.circulation.complete_loan(old.id, "GOOD", actor, now=datetime(2024, 1, 12))
    issue("S1", "Alice", "Student", actor, copy_id="C1", now=datetime(2024, 3, 1, 10, 30))
    issue("F1", "Bob", "Faculty", actor, copy_id="C2", now=datetime(2024, 3, 3, 16, 0))
    issue("S2", "Carol", "Student", actor, copy_id="C3", now=datetime(2024, 2, 10, 12, 0))


def _copies(library, today=TODAY, **filters):
    return [
        v.transaction.copy_id
        for v in library.active_loans(ActiveLoanFilter(**filters), today=today)
    ]


def test_active_loans_sorted_by_due_date(library, loans):
    views = library.active_loans(today=TODAY)

    assert [v.transaction.copy_id for v in views] == ["C3", "C1", "C2"]
    late = views[0]
    assert late.book_title == "Pride and Prejudice"
    assert late.borrower_role == "Student"
    assert late.days_overdue == 15
    assert late.is_overdue
    assert not views[1].is_overdue


def test_free_text_search(library, loans):
    assert _copies(library, search="carol") == ["C3"]
    assert _copies(library, search="f1") == ["C2"]
    assert _copies(library, search="c2") == ["C2"]
    assert _copies(library, search="PRIDE") == ["C3", "C1", "C2"]
    assert _copies(library, search="nobody") == []


def test_lender_type_filter(library, loans):
    assert _copies(library, lender_type="Faculty") == ["C2"]
    assert _copies(library, lender_type="Student") == ["C3", "C1"]


def test_issue_date_range_is_inclusive(library, loans):
    assert _copies(library, issued_from=date(2024, 3, 1), issued_to=date(2024, 3, 1)) == ["C1"]
    assert _copies(library, issued_from=date(2024, 3, 1)) == ["C1", "C2"]
    assert _copies(library, issued_to=date(2024, 2, 29)) == ["C3"]


def test_due_within_excludes_overdue(library, loans):
    # window is 2024-03-10 .. 2024-03-17; C3 was due 2024-02-24
    assert _copies(library, due_within_days=7) == ["C1"]
    assert _copies(library, due_within_days=0) == []


def test_filters_combine(library, loans):
    assert _copies(library, lender_type="Student", due_within_days=30) == ["C1"]
    assert _copies(library, lender_type="Faculty", search="alice") == []


def test_overdue_report(library, loans):
    assert [v.transaction.copy_id for v in library.overdue_loans(today=TODAY)] == ["C3"]
    assert library.overdue_loans(today=date(2024, 1, 1)) == []


def test_borrower_history_newest_first(library, loans):
    history = library.borrower_history("S1")
    assert [t.copy_id for t in history] == ["C1", "C4"]
    assert library.borrower_history("nobody") == []
