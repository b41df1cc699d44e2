import threading

import pytest
from sqlalchemy import text

from circulation_service.audit import Action
from circulation_service.db import session_scope
from circulation_service.errors import CirculationError, ConflictFailed, StoreUnavailable
from circulation_service.library import Library
from circulation_service.models import CopyStatus, StaffRole, TransactionStatus

from .conftest import BOOK, SETTINGS, MemoryConfig

WORKERS = 6


@pytest.fixture
def file_library(tmp_path):
    config = type(
        "FileConfig",
        (MemoryConfig,),
        {
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'race.db'}",
            "STORE_TIMEOUT_SECONDS": 5,
        },
    )
    lib = Library(config)
    lib.add_staff("lib1", "Lee Librarian", "lee@example.org", StaffRole.LIBRARIAN)
    lib.save_settings(SETTINGS)
    actor = lib.actor_for("lib1")
    lib.catalog.save_book(dict(BOOK), actor)
    lib.copies.add_copies("B1", 1, actor, copy_ids=["C1"])
    yield lib
    lib.engine.dispose()


def test_only_one_desk_wins_a_copy(file_library):
    actor = file_library.actor_for("lib1")
    barrier = threading.Barrier(WORKERS)
    results = []
    lock = threading.Lock()

    def desk(n):
        barrier.wait()
        try:
            tx = file_library.circulation.issue_loan(
                f"S{n}", f"Borrower {n}", "Student", actor, copy_id="C1"
            )
            outcome = tx
        except (CirculationError, StoreUnavailable) as exc:
            outcome = exc
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=desk, args=(n,)) for n in range(WORKERS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    wins = [r for r in results if not isinstance(r, Exception)]
    assert len(results) == WORKERS
    assert len(wins) == 1

    history = file_library.copies.history("C1")
    assert [t.id for t in history] == [wins[0].id]
    assert history[0].status == TransactionStatus.ACTIVE
    assert file_library.copies.get_copy("C1").status == CopyStatus.BORROWED
    assert len([e for e in file_library.logs() if e.action == Action.BORROWED]) == 1


def test_only_one_desk_closes_a_loan(file_library):
    actor = file_library.actor_for("lib1")
    tx = file_library.circulation.issue_loan("S1", "Alice", "Student", actor, copy_id="C1")
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def desk():
        barrier.wait()
        try:
            outcome = file_library.circulation.complete_loan(tx.id, "GOOD", actor)
        except (CirculationError, StoreUnavailable) as exc:
            outcome = exc
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=desk) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    wins = [r for r in results if not isinstance(r, Exception)]
    assert len(results) == 2
    assert len(wins) == 1
    assert wins[0].status == TransactionStatus.RETURNED

    assert file_library.copies.get_copy("C1").status == CopyStatus.AVAILABLE
    assert len([e for e in file_library.logs() if e.action == Action.RETURNED]) == 1


def test_store_errors_are_translated(library):
    with pytest.raises(StoreUnavailable):
        with session_scope(library.Session) as session:
            session.execute(text("SELECT * FROM no_such_table"))

    with pytest.raises(ConflictFailed):
        library.add_staff("dup", "Duplicate", "lee@example.org", StaffRole.LIBRARIAN)
