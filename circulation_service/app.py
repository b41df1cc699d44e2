import logging
import os
from datetime import date

from flask import Flask, g, jsonify, request
from flask_cors import CORS

from .config import Config
from .errors import (
    CirculationError,
    ConflictFailed,
    InvalidState,
    NotFound,
    PermissionDenied,
    StoreUnavailable,
    ValidationFailed,
)
from .library import ADMINS, MANAGERS, Library
from .queries import ActiveLoanFilter

logger = logging.getLogger(__name__)

STATUS_CODES = {
    NotFound: 404,
    ValidationFailed: 400,
    InvalidState: 409,
    ConflictFailed: 409,
    PermissionDenied: 403,
}

# JSON field -> Book column
BOOK_KEYS = {
    "id": "id",
    "title": "title",
    "authors": "authors",
    "categories": "categories",
    "isbn": "isbn",
    "genre": "genre",
    "publisher": "publisher",
    "publishedYear": "published_year",
    "locationRack": "location_rack",
    "locationShelf": "location_shelf",
    "locCallNumber": "loc_call_number",
    "description": "description",
    "coverUrl": "cover_url",
}


# ----------------- serializers -----------------

def _iso(value):
    return value.isoformat() if value is not None else None


def book_to_dict(book, holdings=None):
    data = {key: getattr(book, column) for key, column in BOOK_KEYS.items()}
    if holdings is not None:
        data["lendableCopies"], data["totalCopies"] = holdings
    return data


def copy_to_dict(copy):
    return {
        "id": copy.id,
        "bookId": copy.book_id,
        "status": copy.status.value,
        "addedDate": _iso(copy.added_date),
        "isReferenceOnly": copy.is_reference_only,
        "narration": copy.narration,
    }


def transaction_to_dict(tx):
    return {
        "id": tx.id,
        "copyId": tx.copy_id,
        "bookId": tx.book_id,
        "userId": tx.user_id,
        "userName": tx.user_name,
        "issueDate": _iso(tx.issue_date),
        "dueDate": _iso(tx.due_date),
        "status": tx.status.value,
        "returnDate": _iso(tx.return_date),
        "returnCondition": tx.return_condition.value if tx.return_condition else None,
        "fineAmount": float(tx.fine_amount) if tx.fine_amount is not None else None,
    }


def loan_view_to_dict(view):
    data = transaction_to_dict(view.transaction)
    data.update(
        bookTitle=view.book_title,
        borrowerRole=view.borrower_role,
        daysOverdue=view.days_overdue,
        isOverdue=view.is_overdue,
    )
    return data


def log_to_dict(entry):
    return {
        "id": entry.id,
        "bookId": entry.book_id,
        "bookTitle": entry.book_title,
        "action": entry.action,
        "description": entry.description,
        "timestamp": _iso(entry.timestamp),
        "userId": entry.user_id,
        "userName": entry.user_name,
        "staffId": entry.staff_id,
        "staffName": entry.staff_name,
    }


def staff_to_dict(staff):
    return {
        "id": staff.id,
        "name": staff.name,
        "email": staff.email,
        "role": staff.role.value,
        "isActive": staff.is_active,
        "lastLogin": _iso(staff.last_login),
    }


# ----------------- request helpers -----------------

def _payload():
    if not request.get_data():
        return {}
    data = request.get_json(force=True)
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return data


def _date_arg(name):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationFailed(f"{name} must be a date (YYYY-MM-DD)", field=name) from None


def _int_arg(name):
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationFailed(f"{name} must be a whole number", field=name) from None


def _flag(value):
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def create_app(config=Config, library=None):
    app = Flask(__name__)
    app.config.from_object(config)
    CORS(app)

    library = library or Library(config)
    app.extensions["library"] = library

    def actor(roles=None):
        g.actor = library.actor_for(request.headers.get("X-Staff-Id"), roles=roles)
        return g.actor

    # ----------------- errors -----------------

    @app.errorhandler(CirculationError)
    def handle_domain_error(exc):
        status = STATUS_CODES.get(type(exc), 400)
        logger.warning("%s %s -> %s: %s", request.method, request.path, status, exc.message)
        return jsonify(exc.to_dict()), status

    @app.errorhandler(StoreUnavailable)
    def handle_store_unavailable(exc):
        logger.warning("%s %s -> 503: %s", request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), 503

    # ----------------- health -----------------

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok"})

    # ----------------- staff -----------------

    @app.get("/api/staff")
    def list_staff():
        actor(ADMINS)
        return jsonify([staff_to_dict(s) for s in library.list_staff()])

    @app.post("/api/staff/<staff_id>/toggle-status")
    def toggle_staff_status(staff_id):
        staff = library.toggle_staff_status(staff_id, actor(ADMINS))
        return jsonify(staff_to_dict(staff))

    # ----------------- settings -----------------

    @app.get("/api/settings")
    def get_settings():
        actor()
        return jsonify(library.get_settings().to_dict())

    @app.put("/api/settings")
    def save_settings():
        actor(ADMINS)
        return jsonify(library.save_settings(_payload()).to_dict())

    @app.post("/api/settings/rename")
    def rename_setting():
        data = _payload()
        changed = library.rename_setting(
            data.get("key"), data.get("oldValue"), data.get("newValue"), actor(ADMINS)
        )
        return jsonify({"updated": changed, "settings": library.get_settings().to_dict()})

    @app.post("/api/settings/<key>/values")
    def add_setting_value(key):
        actor(ADMINS)
        data = _payload()
        library.add_setting_value(key, data.get("value"), number=data.get("number"))
        return jsonify(library.get_settings().to_dict()), 201

    @app.put("/api/settings/<key>/values/<value>")
    def set_setting_number(key, value):
        actor(ADMINS)
        library.set_setting_number(key, value, _payload().get("number"))
        return jsonify(library.get_settings().to_dict())

    @app.delete("/api/settings/<key>/values/<value>")
    def remove_setting_value(key, value):
        actor(ADMINS)
        library.remove_setting_value(key, value)
        return jsonify(library.get_settings().to_dict())

    # ----------------- books -----------------

    @app.get("/api/books")
    def list_books():
        actor()
        books = library.catalog.search_books(request.args.get("query", ""))
        return jsonify(
            [book_to_dict(b, library.catalog.book_holdings(b.id)) for b in books]
        )

    @app.get("/api/books/<book_id>")
    def get_book(book_id):
        actor()
        book = library.catalog.get_book(book_id)
        return jsonify(book_to_dict(book, library.catalog.book_holdings(book_id)))

    @app.post("/api/books")
    def save_book():
        """Create, or update when the body carries an existing id."""
        data = _payload()
        fields = {column: data[key] for key, column in BOOK_KEYS.items() if key in data}
        book = library.catalog.save_book(fields, actor(MANAGERS))
        return jsonify(book_to_dict(book)), 201

    @app.delete("/api/books/<book_id>")
    def delete_book(book_id):
        library.catalog.delete_book(book_id, actor(MANAGERS))
        return jsonify({"message": "Deleted"})

    # ----------------- copies -----------------

    @app.get("/api/copies")
    def list_copies():
        actor()
        copies = library.copies.list_copies(request.args.get("bookId"))
        return jsonify([copy_to_dict(c) for c in copies])

    @app.get("/api/copies/available")
    def available_copies():
        actor()
        rows = library.circulation.find_available_copies(
            request.args.get("query", ""),
            require_lendable=_flag(request.args.get("lendableOnly", "")),
        )
        return jsonify(
            [dict(copy_to_dict(copy), bookTitle=book.title, isbn=book.isbn) for copy, book in rows]
        )

    @app.get("/api/copies/<copy_id>/transactions")
    def copy_history(copy_id):
        actor()
        return jsonify([transaction_to_dict(t) for t in library.copies.history(copy_id)])

    @app.post("/api/books/<book_id>/copies")
    def add_copies(book_id):
        data = _payload()
        created = library.copies.add_copies(
            book_id,
            data.get("count", 1),
            actor(MANAGERS),
            copy_ids=data.get("copyIds"),
            is_reference_only=_flag(data.get("isReferenceOnly", False)),
        )
        return jsonify([copy_to_dict(c) for c in created]), 201

    @app.put("/api/copies/<copy_id>")
    def manage_copy(copy_id):
        data = _payload()
        copy = library.copies.manage_copy(
            copy_id,
            actor(MANAGERS),
            status=data.get("status"),
            is_reference_only=data.get("isReferenceOnly"),
            narration=data.get("narration"),
        )
        return jsonify(copy_to_dict(copy))

    @app.delete("/api/copies/<copy_id>")
    def purge_copy(copy_id):
        library.copies.purge_copy(copy_id, actor(MANAGERS))
        return jsonify({"message": "Deleted"})

    @app.post("/api/copies/withdraw")
    def withdraw_copies():
        data = _payload()
        copies = library.copies.withdraw_copies(
            data.get("copyIds") or [],
            data.get("reason"),
            actor(MANAGERS),
            remarks=data.get("remarks", ""),
        )
        return jsonify([copy_to_dict(c) for c in copies])

    # ----------------- transactions -----------------

    @app.get("/api/transactions")
    def active_loans():
        actor()
        loan_filter = ActiveLoanFilter(
            search=request.args.get("search", ""),
            lender_type=request.args.get("lenderType") or None,
            issued_from=_date_arg("issuedFrom"),
            issued_to=_date_arg("issuedTo"),
            due_within_days=_int_arg("dueWithinDays"),
        )
        return jsonify([loan_view_to_dict(v) for v in library.active_loans(loan_filter)])

    @app.get("/api/transactions/overdue")
    def overdue_loans():
        actor()
        return jsonify([loan_view_to_dict(v) for v in library.overdue_loans()])

    @app.post("/api/transactions")
    def issue_loan():
        data = _payload()
        tx = library.circulation.issue_loan(
            data.get("borrowerId"),
            data.get("borrowerName"),
            data.get("lenderType"),
            actor(),
            copy_id=data.get("copyId"),
            query=data.get("query"),
            require_lendable=_flag(data.get("requireLendable", False)),
            email=data.get("email"),
        )
        return jsonify(transaction_to_dict(tx)), 201

    @app.post("/api/transactions/<transaction_id>/complete")
    def complete_loan(transaction_id):
        tx = library.circulation.complete_loan(
            transaction_id, _payload().get("condition", "GOOD"), actor()
        )
        return jsonify(transaction_to_dict(tx))

    @app.post("/api/transactions/<transaction_id>/renew")
    def renew_loan(transaction_id):
        tx = library.circulation.renew_loan(transaction_id, actor())
        return jsonify(transaction_to_dict(tx))

    @app.get("/api/borrowers/<borrower_id>/transactions")
    def borrower_transactions(borrower_id):
        actor()
        return jsonify(
            [transaction_to_dict(t) for t in library.borrower_history(borrower_id)]
        )

    # ----------------- logs -----------------

    @app.get("/api/logs")
    def list_logs():
        actor()
        entries = library.logs(
            book_id=request.args.get("bookId") or None, limit=_int_arg("limit")
        )
        return jsonify([log_to_dict(e) for e in entries])

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
