# seed_demo.py
import requests

from circulation_service.config import Config
from circulation_service.library import Library
from circulation_service.models import StaffRole

BASE_URL = "http://localhost:5000"

ADMIN = {
    "staff_id": "admin",
    "name": "Demo Admin",
    "email": "admin@library.local",
    "role": StaffRole.ADMIN,
}

SETTINGS = {
    "authors": [
        "Robert C. Martin",
        "Andrew Hunt",
        "David Thomas",
        "Martin Kleppmann",
        "Joshua Bloch",
    ],
    "categories": ["Computer Science", "Software Engineering", "Databases"],
    "genres": ["General", "Reference", "Textbook"],
    "publishers": ["Prentice Hall", "Addison-Wesley", "O'Reilly Media"],
    "racks": ["R1", "R2", "R3"],
    "shelves": ["S1", "S2", "S3", "S4"],
    "withdrawalReasons": ["Damaged beyond repair", "Outdated edition", "Duplicate"],
    "lenderTypes": [
        {"name": "Student", "duration": 14},
        {"name": "Faculty", "duration": 30},
        {"name": "Staff", "duration": 21},
    ],
    "returnFilterOptions": [
        {"label": "Due today", "days": 0},
        {"label": "Due this week", "days": 7},
    ],
}

BOOKS = [
    {
        "title": "Clean Code",
        "authors": ["Robert C. Martin"],
        "categories": ["Software Engineering"],
        "isbn": "978-0132350884",
        "genre": "Textbook",
        "publisher": "Prentice Hall",
        "publishedYear": "2008",
        "locationRack": "R1",
        "locationShelf": "S1",
        "locCallNumber": "QA76.76.D47 M37 2008",
    },
    {
        "title": "The Pragmatic Programmer",
        "authors": ["Andrew Hunt", "David Thomas"],
        "categories": ["Software Engineering"],
        "isbn": "978-0201616224",
        "genre": "General",
        "publisher": "Addison-Wesley",
        "publishedYear": "1999",
        "locationRack": "R1",
        "locationShelf": "S2",
        "locCallNumber": "QA76.6 .H857 1999",
    },
    {
        "title": "Effective Java",
        "authors": ["Joshua Bloch"],
        "categories": ["Computer Science"],
        "isbn": "978-0134685991",
        "genre": "Textbook",
        "publisher": "Addison-Wesley",
        "publishedYear": "2018",
        "locationRack": "R2",
        "locationShelf": "S1",
        "locCallNumber": "QA76.73.J38 B57 2018",
    },
    {
        "title": "Designing Data-Intensive Applications",
        "authors": ["Martin Kleppmann"],
        "categories": ["Databases", "Computer Science"],
        "isbn": "978-1491950357",
        "genre": "Reference",
        "publisher": "O'Reilly Media",
        "publishedYear": "2017",
        "locationRack": "R3",
        "locationShelf": "S4",
        "locCallNumber": "QA76.9.D32 K54 2017",
    },
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] service not reachable at {health_url}: {e}")
        return False


def ensure_admin():
    """Staff are not managed over HTTP, so the first admin goes straight into the store."""
    library = Library(Config)
    if any(s.id == ADMIN["staff_id"] for s in library.list_staff()):
        print(f"  admin '{ADMIN['staff_id']}' already exists")
        return
    library.add_staff(**ADMIN)
    print(f"  created admin '{ADMIN['staff_id']}'")


def seed_settings(headers):
    print("\n== Saving settings ==")
    resp = requests.put(f"{BASE_URL}/api/settings", json=SETTINGS, headers=headers, timeout=5)
    print(f"  settings -> {resp.status_code}")
    return resp.ok


def seed_books(headers):
    """Create every demo book with a few copies; returns all new copy ids."""
    print("\n== Seeding books and copies ==")
    created = []
    for i, book in enumerate(BOOKS, start=1):
        try:
            resp = requests.post(f"{BASE_URL}/api/books", json=book, headers=headers, timeout=5)
            print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
            if not resp.ok:
                print(f"      Body: {resp.text.strip()}")
                continue
            book_id = resp.json()["id"]
            # vary copies per title to make availability more interesting
            resp = requests.post(
                f"{BASE_URL}/api/books/{book_id}/copies",
                json={"count": 1 + (i % 3)},
                headers=headers,
                timeout=5,
            )
            copies = [c["id"] for c in resp.json()] if resp.ok else []
            print(f"      copies -> {resp.status_code} {', '.join(copies)}")
            created.extend(copies)
        except requests.RequestException as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")
    return created


def issue_demo_loan(headers, copy_id):
    print("\n== Issuing a demo loan ==")
    resp = requests.post(
        f"{BASE_URL}/api/transactions",
        json={
            "borrowerId": "S1001",
            "borrowerName": "Ada Student",
            "lenderType": "Student",
            "copyId": copy_id,
        },
        headers=headers,
        timeout=5,
    )
    print(f"  loan -> {resp.status_code} {resp.text.strip()}")


def main():
    print("Preparing staff account...")
    ensure_admin()

    print("\nChecking circulation service...")
    if not check_service(BASE_URL):
        print("\nService is not reachable. Make sure it is running on 5000.")
        return

    headers = {"X-Staff-Id": ADMIN["staff_id"]}
    if not seed_settings(headers):
        print("Saving settings failed, nothing else to seed.")
        return
    copies = seed_books(headers)
    if copies:
        issue_demo_loan(headers, copies[0])

    print("\nDone.")
    print("Try hitting:")
    print("  http://localhost:5000/api/transactions  (with header X-Staff-Id: admin)")


if __name__ == "__main__":
    main()
