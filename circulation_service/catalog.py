import logging
import re
import uuid

from .audit import Action, AuditLog
from .db import session_scope
from .errors import InvalidState, ValidationFailed
from .models import Book, CopyStatus
from .repositories import BookRepo, CopyRepo
from .settings_store import SettingsStore, VocabularyKind

logger = logging.getLogger(__name__)

BOOK_FIELDS = (
    "title",
    "authors",
    "categories",
    "isbn",
    "genre",
    "publisher",
    "published_year",
    "location_rack",
    "location_shelf",
    "loc_call_number",
    "description",
    "cover_url",
)

_YEAR = re.compile(r"^\d{4}$")


def holdings(copies):
    """(lendable, total) where lendable = available and not reference only."""
    lendable = sum(
        1
        for c in copies
        if c.status == CopyStatus.AVAILABLE and not c.is_reference_only
    )
    total = sum(
        1 for c in copies if c.status not in (CopyStatus.WITHDRAWN, CopyStatus.LOST)
    )
    return lendable, total


def _text(data, key):
    value = data.get(key)
    return None if value is None else str(value).strip()


def _names(value):
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    names = [str(v).strip() for v in value if v is not None]
    return [n for n in names if n]


def validate_book(data, settings):
    """
    Normalise and check a book payload. Authors and categories must come
    from the configured vocabularies so renames can reach them later.
    """
    errors = {}
    title = _text(data, "title")
    if not title:
        errors["title"] = "Title is required"

    authors = _names(data.get("authors"))
    categories = _names(data.get("categories"))
    if not authors:
        errors["authors"] = "At least one author is required"
    elif settings is not None:
        unknown = [a for a in authors if a not in settings.values(VocabularyKind.AUTHORS)]
        if unknown:
            errors["authors"] = f"Unknown author(s): {', '.join(unknown)}"
    if not categories:
        errors["categories"] = "At least one category is required"
    elif settings is not None:
        unknown = [
            c for c in categories if c not in settings.values(VocabularyKind.CATEGORIES)
        ]
        if unknown:
            errors["categories"] = f"Unknown category(ies): {', '.join(unknown)}"

    for key, label in (
        ("isbn", "ISBN"),
        ("publisher", "Publisher"),
        ("location_rack", "Rack"),
        ("location_shelf", "Shelf"),
        ("loc_call_number", "Call number"),
    ):
        if not _text(data, key):
            errors[key] = f"{label} is required"

    year = _text(data, "published_year")
    if not year:
        errors["published_year"] = "Year is required"
    elif not _YEAR.match(str(year)):
        errors["published_year"] = "Year must be 4 digits"

    if errors:
        raise ValidationFailed("Please fix the errors in the form", fields=errors)

    cleaned = {
        key: _text(data, key)
        for key in BOOK_FIELDS
        if key in data and key not in ("authors", "categories")
    }
    cleaned.update(
        title=title,
        authors=list(dict.fromkeys(authors)),
        categories=list(dict.fromkeys(categories)),
        published_year=str(year),
        genre=_text(data, "genre") or "General",
        description=_text(data, "description") or "",
    )
    return cleaned


class CatalogService:
    def __init__(self, session_factory, settings_store=None):
        self.Session = session_factory
        self.settings_store = settings_store or SettingsStore()

    def list_books(self):
        with session_scope(self.Session) as session:
            return BookRepo.list_all(session)

    def get_book(self, book_id):
        with session_scope(self.Session) as session:
            return BookRepo.require(session, book_id)

    def search_books(self, text):
        text = "" if text is None else str(text).strip()
        if not text:
            return self.list_books()
        with session_scope(self.Session) as session:
            return BookRepo.search(session, text)

    def book_holdings(self, book_id):
        with session_scope(self.Session) as session:
            BookRepo.require(session, book_id)
            return holdings(CopyRepo.list_by_book(session, book_id))

    def save_book(self, data, actor):
        """Create a book (no id / unknown id) or update an existing one."""
        with session_scope(self.Session) as session:
            settings = self.settings_store.get(session)
            cleaned = validate_book(data, settings)
            book_id = _text(data, "id") or str(uuid.uuid4())
            existing = BookRepo.get(session, book_id, lock=True)

            if existing is None:
                book = BookRepo.upsert(session, Book(id=book_id, **cleaned))
                AuditLog.append(
                    session,
                    actor,
                    Action.BOOK_CREATED,
                    f"Book created with ISBN {book.isbn}",
                    book=book,
                )
            else:
                book = existing
                for key, value in cleaned.items():
                    setattr(book, key, value)
                session.flush()
                AuditLog.append(
                    session, actor, Action.BOOK_UPDATED, "Book details updated.", book=book
                )

        logger.info("Saved book %s (%s)", book.id, "new" if existing is None else "update")
        return book

    def delete_book(self, book_id, actor):
        """Remove a book from the catalog. Books that still own copies are kept."""
        with session_scope(self.Session) as session:
            book = BookRepo.require(session, book_id, lock=True)
            if CopyRepo.list_by_book(session, book_id):
                raise InvalidState(
                    "Withdraw or delete this book's copies before deleting the book",
                    book_id=book_id,
                )
            AuditLog.append(
                session,
                actor,
                Action.BOOK_DELETED,
                f"Book '{book.title}' deleted from catalog.",
                book=book,
            )
            BookRepo.delete(session, book)
        logger.info("Deleted book %s", book_id)
