from datetime import datetime

import pytest

from circulation_service.app import create_app
from circulation_service.config import Config
from circulation_service.library import Library
from circulation_service.models import StaffRole

T0 = datetime(2024, 3, 1, 10, 30)

SETTINGS = {
    "authors": ["Jane Austen", "Leo Tolstoy"],
    "categories": ["Fiction", "Classics", "History"],
    "genres": ["General", "Novel"],
    "publishers": ["Penguin", "Vintage"],
    "racks": ["R1", "R2"],
    "shelves": ["S1", "S2"],
    "withdrawalReasons": ["Damaged", "Outdated"],
    "lenderTypes": [
        {"name": "Student", "duration": 14},
        {"name": "Faculty", "duration": 30},
    ],
    "returnFilterOptions": [{"label": "This week", "days": 7}],
}

BOOK = {
    "id": "B1",
    "title": "Pride and Prejudice",
    "authors": ["Jane Austen"],
    "categories": ["Fiction", "Classics"],
    "isbn": "9780141439518",
    "genre": "Novel",
    "publisher": "Penguin",
    "published_year": "1813",
    "location_rack": "R1",
    "location_shelf": "S1",
    "loc_call_number": "PR4034 .P7 1813",
}


class MemoryConfig(Config):
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ECHO = False
    TESTING = True


@pytest.fixture
def library():
    lib = Library(MemoryConfig)
    lib.add_staff("admin", "Ada Admin", "admin@example.org", StaffRole.ADMIN)
    lib.add_staff("lib1", "Lee Librarian", "lee@example.org", StaffRole.LIBRARIAN)
    lib.add_staff("stu1", "Sam Student", "sam@example.org", StaffRole.STUDENT)
    lib.add_staff(
        "gone", "Old Staff", "gone@example.org", StaffRole.LIBRARIAN, is_active=False
    )
    lib.save_settings(SETTINGS)
    yield lib
    lib.engine.dispose()


@pytest.fixture
def actor(library):
    return library.actor_for("lib1")


@pytest.fixture
def book(library, actor):
    return library.catalog.save_book(dict(BOOK), actor)


@pytest.fixture
def copy(library, book, actor):
    return library.copies.add_copies(book.id, 1, actor, copy_ids=["C1"], now=T0)[0]


@pytest.fixture
def client(library):
    app = create_app(MemoryConfig, library=library)
    return app.test_client()
