"""
LibrarySystem-style facade: one object that owns the engine and session
factory and composes the catalog, copy, circulation and settings services.
The HTTP layer and the seed script only ever talk to this class.
"""

import logging

from .audit import Action, Actor, AuditLog
from .catalog import CatalogService
from .circulation import CirculationEngine
from .config import Config
from .copies import CopyService
from .db import init_db, make_engine, make_session_factory, session_scope
from .errors import PermissionDenied, ValidationFailed
from .models import StaffRole, StaffUser
from .queries import borrower_history, list_active_loans, list_overdue_loans
from .repositories import BorrowerRepo, StaffRepo
from .settings_store import SettingsSnapshot, SettingsStore, coerce_kind

logger = logging.getLogger(__name__)

MANAGERS = (StaffRole.ADMIN, StaffRole.LIBRARIAN)
ADMINS = (StaffRole.ADMIN,)


class Library:
    def __init__(self, config=Config, engine=None):
        self.config = config
        self.engine = engine or make_engine(
            config.SQLALCHEMY_DATABASE_URI,
            timeout=config.STORE_TIMEOUT_SECONDS,
            echo=config.SQLALCHEMY_ECHO,
        )
        init_db(self.engine)
        self.Session = make_session_factory(self.engine)

        self.settings_store = SettingsStore(default_loan_days=config.DEFAULT_LOAN_DAYS)
        self.catalog = CatalogService(self.Session, self.settings_store)
        self.copies = CopyService(self.Session)
        self.circulation = CirculationEngine(
            self.Session,
            self.settings_store,
            search_limit=config.AVAILABLE_SEARCH_LIMIT,
        )

    # ----------------- staff -----------------

    def add_staff(self, staff_id, name, email, role=StaffRole.LIBRARIAN, is_active=True):
        try:
            role = StaffRole(str(getattr(role, "value", role)).upper())
        except ValueError:
            raise ValidationFailed(f"Unknown staff role {role!r}") from None
        with session_scope(self.Session) as session:
            staff = StaffRepo.add(
                session,
                StaffUser(
                    id=staff_id,
                    name=name,
                    email=email,
                    role=role,
                    is_active=is_active,
                ),
            )
        logger.info("Added staff %s (%s)", staff_id, role.value)
        return staff

    def list_staff(self):
        with session_scope(self.Session) as session:
            return StaffRepo.list_all(session)

    def set_staff_active(self, staff_id, is_active, actor):
        """Enable or disable a staff account. Staff cannot disable themselves."""
        is_active = bool(is_active)
        if not is_active and staff_id == actor.staff_id:
            raise ValidationFailed("You cannot disable your own account", staff_id=staff_id)
        with session_scope(self.Session) as session:
            staff = StaffRepo.require(session, staff_id, lock=True)
            staff.is_active = is_active
            session.flush()
        logger.info(
            "Staff %s %s by %s",
            staff_id,
            "enabled" if is_active else "disabled",
            actor.staff_id,
        )
        return staff

    def toggle_staff_status(self, staff_id, actor):
        with session_scope(self.Session) as session:
            staff = StaffRepo.require(session, staff_id)
            is_active = staff.is_active
        return self.set_staff_active(staff_id, not is_active, actor)

    def actor_for(self, staff_id, roles=None):
        """
        Resolve the staff member behind a request. Unknown or inactive staff
        are rejected, as is anyone whose role is not in `roles` (when given).
        """
        if not staff_id or not str(staff_id).strip():
            raise PermissionDenied("Staff identification is required")
        with session_scope(self.Session) as session:
            staff = StaffRepo.get(session, str(staff_id).strip())
            if staff is None or not staff.is_active:
                logger.warning("Rejected request from staff %s", staff_id)
                raise PermissionDenied("Unknown or inactive staff member", staff_id=staff_id)
            if roles and staff.role not in roles:
                raise PermissionDenied(
                    f"{staff.role.value} staff may not perform this action",
                    staff_id=staff.id,
                )
            return Actor.from_staff(staff)

    # ----------------- settings -----------------

    def get_settings(self):
        with session_scope(self.Session) as session:
            return self.settings_store.get(session)

    def save_settings(self, data):
        if isinstance(data, SettingsSnapshot):
            snapshot = data
        else:
            snapshot = SettingsSnapshot.from_dict(
                data or {}, default_loan_days=self.config.DEFAULT_LOAN_DAYS
            )
        with session_scope(self.Session) as session:
            self.settings_store.save(session, snapshot)
            return self.settings_store.get(session)

    def add_setting_value(self, kind, value, number=None):
        with session_scope(self.Session) as session:
            return self.settings_store.add_value(session, kind, value, number=number)

    def remove_setting_value(self, kind, value):
        with session_scope(self.Session) as session:
            self.settings_store.remove_value(session, kind, value)

    def set_setting_number(self, kind, value, number):
        with session_scope(self.Session) as session:
            return self.settings_store.set_number(session, kind, value, number)

    def rename_setting(self, kind, old, new, actor, now=None):
        """Rename a vocabulary value everywhere it is used. Returns rows rewritten."""
        kind = coerce_kind(kind)
        with session_scope(self.Session) as session:
            changed = self.settings_store.rename_value(session, kind, old, new)
            AuditLog.append(
                session,
                actor,
                Action.SETTING_RENAMED,
                f"Renamed {kind.value} '{old}' to '{str(new or '').strip()}' "
                f"({changed} records updated).",
                now=now,
            )
        return changed

    # ----------------- queries -----------------

    def active_loans(self, loan_filter=None, today=None):
        with session_scope(self.Session) as session:
            return list_active_loans(session, loan_filter, today=today)

    def overdue_loans(self, today=None):
        with session_scope(self.Session) as session:
            return list_overdue_loans(session, today=today)

    def borrower_history(self, borrower_id):
        with session_scope(self.Session) as session:
            return borrower_history(session, borrower_id)

    def borrowers(self):
        with session_scope(self.Session) as session:
            return BorrowerRepo.list_all(session)

    def logs(self, book_id=None, limit=None):
        with session_scope(self.Session) as session:
            return AuditLog.list(session, book_id=book_id, limit=limit)
