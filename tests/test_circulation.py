from datetime import timedelta

import pytest
from sqlalchemy import func, select

from circulation_service.audit import Action
from circulation_service.db import session_scope
from circulation_service.errors import (
    ConflictFailed,
    InvalidState,
    NotFound,
    ValidationFailed,
)
from circulation_service.models import (
    Borrower,
    Copy,
    CopyStatus,
    ReturnCondition,
    Transaction,
    TransactionStatus,
)
from circulation_service.repositories import CopyRepo

from .conftest import T0


def _issue(library, actor, copy_id="C1", borrower_id="S1", name="Alice", role="Student", now=T0):
    return library.circulation.issue_loan(
        borrower_id, name, role, actor, copy_id=copy_id, now=now
    )


def _actions(library, action):
    return [e for e in library.logs() if e.action == action]


def _assert_copy_invariant(library):
    """A copy is BORROWED exactly when one ACTIVE transaction points at it."""
    with session_scope(library.Session) as session:
        copies = session.execute(select(Copy)).scalars().all()
        for copy in copies:
            active = session.execute(
                select(func.count())
                .select_from(Transaction)
                .where(Transaction.copy_id == copy.id)
                .where(Transaction.status == TransactionStatus.ACTIVE)
            ).scalar_one()
            if copy.status == CopyStatus.BORROWED:
                assert active == 1, copy.id
            else:
                assert active == 0, copy.id


def test_issue_loan(library, actor, copy):
    tx = _issue(library, actor)

    assert tx.status == TransactionStatus.ACTIVE
    assert tx.due_date == T0 + timedelta(days=14)
    assert tx.user_name == "Alice"
    assert library.copies.get_copy("C1").status == CopyStatus.BORROWED

    borrowed = _actions(library, Action.BORROWED)
    assert len(borrowed) == 1
    assert borrowed[0].description == "Copy #C1 issued to Alice (Student). Due: 2024-03-15"
    assert borrowed[0].book_id == "B1"
    assert borrowed[0].staff_id == "lib1"
    _assert_copy_invariant(library)


def test_issue_uses_lender_type_duration(library, actor, copy):
    tx = _issue(library, actor, role="Faculty")
    assert tx.due_date == T0 + timedelta(days=30)


def test_issue_unconfigured_lender_type_gets_default(library, actor, copy):
    tx = _issue(library, actor, role="Visitor")
    assert tx.due_date == T0 + timedelta(days=14)


def test_issue_updates_existing_borrower(library, actor, copy):
    tx = _issue(library, actor)
    library.circulation.complete_loan(tx.id, ReturnCondition.GOOD, actor, now=T0)
    _issue(library, actor, name="Alice Smith", role="Faculty", now=T0 + timedelta(days=1))

    borrowers = library.borrowers()
    assert len(borrowers) == 1
    assert borrowers[0].name == "Alice Smith"
    assert borrowers[0].role == "Faculty"


def test_issue_unavailable_copy_changes_nothing(library, actor, copy):
    library.copies.withdraw_copies(["C1"], "Damaged", actor)
    logs_before = len(library.logs())

    with pytest.raises(InvalidState):
        _issue(library, actor)

    assert library.copies.history("C1") == []
    assert library.borrowers() == []
    assert len(library.logs()) == logs_before


def test_issue_by_search_query(library, actor, copy):
    tx = library.circulation.issue_loan("S1", "Alice", "Student", actor, query="pride", now=T0)
    assert tx.copy_id == "C1"


def test_issue_by_query_needs_a_single_match(library, actor, book, copy):
    library.copies.add_copies(book.id, 1, actor, copy_ids=["C2"])

    with pytest.raises(ValidationFailed):
        library.circulation.issue_loan("S1", "Alice", "Student", actor, query="prejudice")
    with pytest.raises(NotFound):
        library.circulation.issue_loan("S1", "Alice", "Student", actor, query="tolstoy")

    # an exact copy id wins over the ambiguous text match
    tx = library.circulation.issue_loan("S1", "Alice", "Student", actor, query="C2")
    assert tx.copy_id == "C2"


def test_query_naming_a_borrowed_copy_does_not_lend_another(library, actor, book, copy):
    _issue(library, actor)
    library.copies.add_copies(book.id, 1, actor, copy_ids=["C10"])

    with pytest.raises(InvalidState):
        library.circulation.issue_loan("S2", "Bob", "Student", actor, query="C1")

    assert library.copies.get_copy("C10").status == CopyStatus.AVAILABLE
    assert len(_actions(library, Action.BORROWED)) == 1
    _assert_copy_invariant(library)


def test_issue_requires_exactly_one_selector(library, actor, copy):
    with pytest.raises(ValidationFailed):
        library.circulation.issue_loan(
            "S1", "Alice", "Student", actor, copy_id="C1", query="pride"
        )
    with pytest.raises(ValidationFailed):
        library.circulation.issue_loan("S1", "Alice", "Student", actor)


@pytest.mark.parametrize("borrower_id", ["", "   ", "S 1", "x" * 101])
def test_issue_rejects_bad_borrower_id(library, actor, copy, borrower_id):
    with pytest.raises(ValidationFailed):
        _issue(library, actor, borrower_id=borrower_id)
    assert library.copies.get_copy("C1").status == CopyStatus.AVAILABLE


def test_reference_only_copy_when_lendable_required(library, actor, copy):
    library.copies.manage_copy("C1", actor, is_reference_only=True)

    with pytest.raises(InvalidState):
        library.circulation.issue_loan(
            "S1", "Alice", "Student", actor, copy_id="C1", require_lendable=True
        )
    assert library.circulation.find_available_copies("pride", require_lendable=True) == []
    assert len(library.circulation.find_available_copies("pride")) == 1


def test_issue_renew_return_scenario(library, actor, copy):
    tx = _issue(library, actor)
    assert tx.due_date == T0 + timedelta(days=14)

    tx = library.circulation.renew_loan(tx.id, actor, now=T0 + timedelta(days=3))
    assert tx.due_date == T0 + timedelta(days=28)
    renewed = _actions(library, Action.RENEWED)
    assert renewed[0].description == "Loan renewed for 14 days. New due date: 2024-03-29."

    with pytest.raises(InvalidState):
        library.copies.withdraw_copies(["C1"], "Damaged", actor)

    tx = library.circulation.complete_loan(tx.id, "GOOD", actor, now=T0 + timedelta(days=20))
    assert tx.status == TransactionStatus.RETURNED
    assert tx.return_condition == ReturnCondition.GOOD
    assert tx.return_date == T0 + timedelta(days=20)
    assert library.copies.get_copy("C1").status == CopyStatus.AVAILABLE
    _assert_copy_invariant(library)


def test_renewal_follows_current_lender_type_duration(library, actor, copy):
    tx = _issue(library, actor)
    library.set_setting_number("lenderTypes", "Student", 21)

    tx = library.circulation.renew_loan(tx.id, actor)
    assert tx.due_date == T0 + timedelta(days=14 + 21)


@pytest.mark.parametrize(
    "condition, copy_status, action",
    [
        (ReturnCondition.DAMAGED, CopyStatus.DAMAGED, Action.RETURNED_DAMAGED),
        (ReturnCondition.LOST, CopyStatus.LOST, Action.MARKED_LOST),
    ],
)
def test_return_condition_sets_copy_status(library, actor, copy, condition, copy_status, action):
    tx = _issue(library, actor)
    library.circulation.complete_loan(tx.id, condition, actor)

    assert library.copies.get_copy("C1").status == copy_status
    assert len(_actions(library, action)) == 1
    _assert_copy_invariant(library)


def test_complete_twice_fails_without_side_effects(library, actor, copy):
    tx = _issue(library, actor)
    library.circulation.complete_loan(tx.id, "GOOD", actor)
    library.copies.manage_copy("C1", actor, status="DAMAGED")

    with pytest.raises(InvalidState):
        library.circulation.complete_loan(tx.id, "GOOD", actor)

    assert library.copies.get_copy("C1").status == CopyStatus.DAMAGED
    assert len(_actions(library, Action.RETURNED)) == 1


def test_renew_returned_loan_fails(library, actor, copy):
    tx = _issue(library, actor)
    library.circulation.complete_loan(tx.id, "GOOD", actor)
    with pytest.raises(InvalidState):
        library.circulation.renew_loan(tx.id, actor)


def test_unknown_transaction_and_condition(library, actor, copy):
    with pytest.raises(NotFound):
        library.circulation.complete_loan("missing", "GOOD", actor)
    tx = _issue(library, actor)
    with pytest.raises(ValidationFailed):
        library.circulation.complete_loan(tx.id, "SOGGY", actor)


def test_lost_race_rolls_back_whole_issue(library, actor, copy, monkeypatch):
    monkeypatch.setattr(CopyRepo, "transition", staticmethod(lambda *a, **kw: 0))

    with pytest.raises(ConflictFailed):
        _issue(library, actor)

    with session_scope(library.Session) as session:
        assert session.execute(select(Borrower)).scalars().all() == []
        assert session.execute(select(Transaction)).scalars().all() == []
    assert _actions(library, Action.BORROWED) == []


def test_transition_is_compare_and_set(library, actor, copy):
    _issue(library, actor)
    with session_scope(library.Session) as session:
        changed = CopyRepo.transition(
            session, ["C1"], [CopyStatus.AVAILABLE], CopyStatus.BORROWED
        )
    assert changed == 0
