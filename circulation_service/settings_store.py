"""
Configurable vocabularies shared by the catalog and the circulation desk.

Each vocabulary kind is stored as one JSON list in the `settings` table. Most
kinds hold plain strings; lender types and return filter options hold small
records. The kind decides the entry type and which rows a rename rewrites, so
every operation here dispatches on `VocabularyKind` instead of guessing from
the stored shape.
"""

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update

from .errors import NotFound, ValidationFailed
from .models import Book, Borrower, Setting

logger = logging.getLogger(__name__)


class VocabularyKind(str, enum.Enum):
    AUTHORS = "authors"
    CATEGORIES = "categories"
    GENRES = "genres"
    PUBLISHERS = "publishers"
    RACKS = "racks"
    SHELVES = "shelves"
    WITHDRAWAL_REASONS = "withdrawalReasons"
    LENDER_TYPES = "lenderTypes"
    RETURN_FILTER_OPTIONS = "returnFilterOptions"


@dataclass(frozen=True)
class LenderType:
    name: str
    duration: int


@dataclass(frozen=True)
class ReturnFilterOption:
    label: str
    days: int


@dataclass
class SettingsSnapshot:
    """Point-in-time copy of every vocabulary, passed explicitly to the engine."""

    authors: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    genres: List[str] = field(default_factory=list)
    publishers: List[str] = field(default_factory=list)
    racks: List[str] = field(default_factory=list)
    shelves: List[str] = field(default_factory=list)
    withdrawal_reasons: List[str] = field(default_factory=list)
    lender_types: List[LenderType] = field(default_factory=list)
    return_filter_options: List[ReturnFilterOption] = field(default_factory=list)
    default_loan_days: int = 14

    def entries(self, kind):
        return getattr(self, _KINDS[kind].attr)

    def values(self, kind) -> List[str]:
        rules = _KINDS[kind]
        return [rules.key(entry) for entry in self.entries(kind)]

    def lender_type(self, name) -> Optional[LenderType]:
        for lt in self.lender_types:
            if lt.name == name:
                return lt
        return None

    def return_filter_option(self, label) -> Optional[ReturnFilterOption]:
        for option in self.return_filter_options:
            if option.label == label:
                return option
        return None

    def to_dict(self):
        return {
            kind.value: [_KINDS[kind].encode(e) for e in self.entries(kind)]
            for kind in VocabularyKind
        }

    @classmethod
    def from_dict(cls, data, default_loan_days=14):
        snapshot = cls(default_loan_days=default_loan_days)
        for kind in VocabularyKind:
            rules = _KINDS[kind]
            raw = data.get(kind.value) or []
            setattr(snapshot, rules.attr, [rules.decode(item) for item in raw])
        return snapshot


# ----------------- per-kind behaviour -----------------

def _decode_string(raw):
    if not isinstance(raw, str):
        raise ValidationFailed(f"Expected a text value, got {raw!r}")
    return raw


def _decode_lender_type(raw):
    if isinstance(raw, LenderType):
        return raw
    try:
        return LenderType(name=str(raw["name"]), duration=int(raw["duration"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationFailed(f"Invalid lender type entry {raw!r}") from exc


def _decode_return_filter(raw):
    if isinstance(raw, ReturnFilterOption):
        return raw
    try:
        return ReturnFilterOption(label=str(raw["label"]), days=int(raw["days"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationFailed(f"Invalid return filter entry {raw!r}") from exc


def _rewrite_book_lists(column):
    """Replace the value inside every book's JSON list, keeping order."""

    def cascade(session, old, new):
        changed = 0
        books = session.execute(select(Book).with_for_update()).scalars().all()
        for book in books:
            values = list(getattr(book, column) or [])
            if old not in values:
                continue
            setattr(book, column, [new if v == old else v for v in values])
            changed += 1
        session.flush()
        return changed

    return cascade


def _rewrite_book_column(column):
    def cascade(session, old, new):
        q = (
            update(Book)
            .where(getattr(Book, column) == old)
            .values(**{column: new})
            .execution_options(synchronize_session=False)
        )
        return session.execute(q).rowcount

    return cascade


def _rewrite_borrower_roles(session, old, new):
    q = (
        update(Borrower)
        .where(Borrower.role == old)
        .values(role=new)
        .execution_options(synchronize_session=False)
    )
    return session.execute(q).rowcount


def _no_cascade(session, old, new):
    return 0


@dataclass(frozen=True)
class _KindRules:
    attr: str
    decode: Callable
    encode: Callable
    key: Callable
    renamed: Callable
    cascade: Callable
    number_field: Optional[str] = None


_STRING = dict(
    decode=_decode_string,
    encode=lambda e: e,
    key=lambda e: e,
    renamed=lambda e, new: new,
)

_KINDS: Dict[VocabularyKind, _KindRules] = {
    VocabularyKind.AUTHORS: _KindRules(
        attr="authors", cascade=_rewrite_book_lists("authors"), **_STRING
    ),
    VocabularyKind.CATEGORIES: _KindRules(
        attr="categories", cascade=_rewrite_book_lists("categories"), **_STRING
    ),
    VocabularyKind.GENRES: _KindRules(
        attr="genres", cascade=_rewrite_book_column("genre"), **_STRING
    ),
    VocabularyKind.PUBLISHERS: _KindRules(
        attr="publishers", cascade=_rewrite_book_column("publisher"), **_STRING
    ),
    VocabularyKind.RACKS: _KindRules(
        attr="racks", cascade=_rewrite_book_column("location_rack"), **_STRING
    ),
    VocabularyKind.SHELVES: _KindRules(
        attr="shelves", cascade=_rewrite_book_column("location_shelf"), **_STRING
    ),
    VocabularyKind.WITHDRAWAL_REASONS: _KindRules(
        attr="withdrawal_reasons", cascade=_no_cascade, **_STRING
    ),
    VocabularyKind.LENDER_TYPES: _KindRules(
        attr="lender_types",
        decode=_decode_lender_type,
        encode=lambda e: {"name": e.name, "duration": e.duration},
        key=lambda e: e.name,
        renamed=lambda e, new: LenderType(name=new, duration=e.duration),
        cascade=_rewrite_borrower_roles,
        number_field="duration",
    ),
    VocabularyKind.RETURN_FILTER_OPTIONS: _KindRules(
        attr="return_filter_options",
        decode=_decode_return_filter,
        encode=lambda e: {"label": e.label, "days": e.days},
        key=lambda e: e.label,
        renamed=lambda e, new: ReturnFilterOption(label=new, days=e.days),
        cascade=_no_cascade,
        number_field="days",
    ),
}


def coerce_kind(value):
    if isinstance(value, VocabularyKind):
        return value
    try:
        return VocabularyKind(value)
    except ValueError:
        raise ValidationFailed(f"Unknown setting key {value!r}", key=value) from None


def _clean(value, what="Value"):
    if value is None or not str(value).strip():
        raise ValidationFailed(f"{what} must not be empty")
    return str(value).strip()


def _check_number(kind, number):
    rules = _KINDS[kind]
    if rules.number_field is None:
        return None
    try:
        number = int(number)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{rules.number_field} must be a whole number") from None
    minimum = 1 if rules.number_field == "duration" else 0
    if number < minimum:
        raise ValidationFailed(f"{rules.number_field} must be at least {minimum}")
    return number


def _check_unique(kind, entries):
    keys = [_KINDS[kind].key(e) for e in entries]
    seen = set()
    for key in keys:
        if not key.strip():
            raise ValidationFailed(f"{kind.value} contains an empty value")
        if key in seen:
            raise ValidationFailed(
                f"{kind.value} contains '{key}' more than once", key=kind.value, value=key
            )
        seen.add(key)


class SettingsStore:
    def __init__(self, default_loan_days=14):
        self.default_loan_days = default_loan_days

    def get(self, session) -> SettingsSnapshot:
        rows = session.execute(select(Setting)).scalars().all()
        data = {row.key: row.value for row in rows}
        return SettingsSnapshot.from_dict(data, default_loan_days=self.default_loan_days)

    def _read(self, session, kind, lock=True):
        q = select(Setting).where(Setting.key == kind.value)
        if lock:
            q = q.with_for_update()
        row = session.execute(q).scalar_one_or_none()
        rules = _KINDS[kind]
        entries = [rules.decode(item) for item in (row.value if row else [])]
        return row, entries

    def _write(self, session, kind, row, entries):
        rules = _KINDS[kind]
        payload = [rules.encode(e) for e in entries]
        if row is None:
            session.add(Setting(key=kind.value, value=payload))
        else:
            row.value = payload
        session.flush()

    def save(self, session, snapshot: SettingsSnapshot):
        """Replace every vocabulary with the snapshot's contents."""
        for kind in VocabularyKind:
            entries = snapshot.entries(kind)
            _check_unique(kind, entries)
            if _KINDS[kind].number_field:
                for entry in entries:
                    _check_number(kind, getattr(entry, _KINDS[kind].number_field))
        for kind in VocabularyKind:
            row, _ = self._read(session, kind)
            self._write(session, kind, row, snapshot.entries(kind))
        logger.info("Settings replaced")

    def add_value(self, session, kind, value, number=None):
        kind = coerce_kind(kind)
        rules = _KINDS[kind]
        value = _clean(value)
        row, entries = self._read(session, kind)
        if value in [rules.key(e) for e in entries]:
            raise ValidationFailed(
                f"'{value}' already exists in {kind.value}", key=kind.value, value=value
            )
        if kind is VocabularyKind.LENDER_TYPES:
            entry = LenderType(name=value, duration=_check_number(kind, number))
        elif kind is VocabularyKind.RETURN_FILTER_OPTIONS:
            entry = ReturnFilterOption(label=value, days=_check_number(kind, number))
        else:
            entry = value
        self._write(session, kind, row, entries + [entry])
        logger.info("Added %s to %s", value, kind.value)
        return entry

    def remove_value(self, session, kind, value):
        kind = coerce_kind(kind)
        rules = _KINDS[kind]
        row, entries = self._read(session, kind)
        kept = [e for e in entries if rules.key(e) != value]
        if len(kept) == len(entries):
            raise NotFound(f"'{value}' not found in {kind.value}", key=kind.value, value=value)
        self._write(session, kind, row, kept)
        logger.info("Removed %s from %s", value, kind.value)

    def set_number(self, session, kind, value, number):
        """Change a lender type's duration or a return filter's day count."""
        kind = coerce_kind(kind)
        rules = _KINDS[kind]
        if rules.number_field is None:
            raise ValidationFailed(f"{kind.value} entries have no numeric field")
        number = _check_number(kind, number)
        row, entries = self._read(session, kind)
        for idx, entry in enumerate(entries):
            if rules.key(entry) == value:
                entries[idx] = replace(entry, **{rules.number_field: number})
                self._write(session, kind, row, entries)
                return entries[idx]
        raise NotFound(f"'{value}' not found in {kind.value}", key=kind.value, value=value)

    def rename_value(self, session, kind, old, new):
        """
        Rename a vocabulary value and rewrite every row that references it.

        Runs inside the caller's transaction; raising leaves both the
        vocabulary and the dependent rows untouched once the caller rolls back.
        Returns the number of dependent rows rewritten.
        """
        kind = coerce_kind(kind)
        rules = _KINDS[kind]
        new = _clean(new, "New value")

        row, entries = self._read(session, kind)
        keys = [rules.key(e) for e in entries]
        if new in keys:
            raise ValidationFailed(
                f"'{new}' already exists in {kind.value}", key=kind.value, value=new
            )
        if old not in keys:
            raise NotFound(f"'{old}' not found in {kind.value}", key=kind.value, value=old)

        idx = keys.index(old)
        entries[idx] = rules.renamed(entries[idx], new)
        self._write(session, kind, row, entries)

        changed = rules.cascade(session, old, new)
        logger.info(
            "Renamed %s '%s' -> '%s' (%s dependent rows)", kind.value, old, new, changed
        )
        return changed
