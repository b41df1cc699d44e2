import enum
from datetime import datetime

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    String,
    Text,
)

Base = declarative_base()


class CopyStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    LOST = "LOST"
    DAMAGED = "DAMAGED"
    WITHDRAWN = "WITHDRAWN"


# Copies that may be withdrawn or selected for bulk actions
ACTIONABLE_STATUSES = (CopyStatus.AVAILABLE, CopyStatus.WITHDRAWN)


class TransactionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"


class ReturnCondition(str, enum.Enum):
    GOOD = "GOOD"
    DAMAGED = "DAMAGED"
    LOST = "LOST"


class StaffRole(str, enum.Enum):
    ADMIN = "ADMIN"
    LIBRARIAN = "LIBRARIAN"
    STUDENT = "STUDENT"


class Book(Base):
    __tablename__ = "books"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    authors = Column(JSON, nullable=False, default=list)
    categories = Column(JSON, nullable=False, default=list)
    isbn = Column(String(20), nullable=False, default="")
    genre = Column(String(100), nullable=False, default="General")
    publisher = Column(String(255), nullable=False, default="")
    published_year = Column(String(10), nullable=False, default="")
    location_rack = Column(String(50), nullable=False, default="")
    location_shelf = Column(String(50), nullable=False, default="")
    loc_call_number = Column(String(100), nullable=False, default="")
    description = Column(Text, default="")
    cover_url = Column(String(500))


class Copy(Base):
    __tablename__ = "copies"

    id = Column(String(64), primary_key=True)
    book_id = Column(String(64), ForeignKey("books.id"), nullable=False, index=True)
    status = Column(
        Enum(CopyStatus, name="copy_status"),
        nullable=False,
        default=CopyStatus.AVAILABLE,
    )
    added_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    is_reference_only = Column(Boolean, nullable=False, default=False)
    narration = Column(Text)


class Borrower(Base):
    """
    A library patron. Role is the lender type name (Student, Faculty, ...)
    and is matched against the configured lender types for loan length.
    """
    __tablename__ = "users"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    role = Column(String(100), nullable=False)
    email = Column(String(255))


class StaffUser(Base):
    __tablename__ = "system_users"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(Enum(StaffRole, name="staff_role"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_login = Column(DateTime)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(64), primary_key=True)
    copy_id = Column(String(64), ForeignKey("copies.id"), nullable=False, index=True)
    book_id = Column(String(64), ForeignKey("books.id"), nullable=False, index=True)
    user_id = Column(String(100), ForeignKey("users.id"), nullable=False, index=True)
    # Borrower name as it was when the loan was issued
    user_name = Column(String(255), nullable=False)
    issue_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    due_date = Column(DateTime, nullable=False)
    status = Column(
        Enum(TransactionStatus, name="transaction_status"),
        nullable=False,
        default=TransactionStatus.ACTIVE,
        index=True,
    )
    return_date = Column(DateTime)
    return_condition = Column(Enum(ReturnCondition, name="return_condition"))
    fine_amount = Column(Numeric(10, 2))


class Log(Base):
    """
    Append-only audit record. Book and borrower fields are optional so that
    settings-level actions can be recorded too.
    """
    __tablename__ = "logs"

    id = Column(String(64), primary_key=True)
    book_id = Column(String(64), index=True)
    book_title = Column(String(255))
    action = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    user_id = Column(String(100))
    user_name = Column(String(255))
    staff_id = Column(String(64), nullable=False)
    staff_name = Column(String(255), nullable=False)


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String(50), primary_key=True)
    value = Column(JSON, nullable=False, default=list)
