import json
import logging
import os
import sqlite3
from typing import Any, Dict, List, Optional

from campuslib.book import Category
from campuslib.errors import ValidationError
from campuslib.validators import BookCodeValidator

logger = logging.getLogger(__name__)

CATEGORY_VALUES = ", ".join(f"'{c.value}'" for c in Category)


def get_db_connection(db_file: str, timeout: float = 5.0) -> sqlite3.Connection:
    """Open a connection to the SQLite store.

    Connections run in autocommit mode; writers open an explicit
    ``BEGIN IMMEDIATE`` so that each unit of work holds the write lock from
    its first statement.  A connection may be handed between worker threads
    but is never used by two at once.
    """
    conn = sqlite3.connect(db_file, timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def create_tables(db_file: str) -> None:
    """Creates the necessary tables in the database if they don't exist."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets lookups read while a circulation write is in progress
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE COLLATE NOCASE,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT NOT NULL CHECK(category IN ({CATEGORY_VALUES})),
                available INTEGER NOT NULL DEFAULT 1 CHECK(available IN (0, 1)),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT UNIQUE,
                name TEXT NOT NULL,
                serial TEXT NOT NULL UNIQUE COLLATE NOCASE,
                email TEXT NOT NULL,
                phone TEXT,
                department TEXT,
                verification_status TEXT NOT NULL DEFAULT 'pending'
                    CHECK(verification_status IN ('pending', 'verified', 'rejected')),
                id_document_path TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Append-only circulation ledger
        conn.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                kind TEXT NOT NULL CHECK(kind IN ('issue', 'return')),
                issued_at TEXT NOT NULL,
                due_at TEXT,
                returned_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE RESTRICT,
                FOREIGN KEY (user_id) REFERENCES user_profiles(id) ON DELETE RESTRICT
            )
        """)

        # Columns added after the first release
        columns = [row[1] for row in conn.execute("PRAGMA table_info(user_profiles)").fetchall()]
        if "department" not in columns:
            conn.execute("ALTER TABLE user_profiles ADD COLUMN department TEXT")
        if "id_document_path" not in columns:
            conn.execute("ALTER TABLE user_profiles ADD COLUMN id_document_path TEXT")

        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_available ON books(available)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_book ON transactions(book_id, created_at DESC)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id)")
        # At most one open issue per book
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_open_issue
            ON transactions(book_id) WHERE kind = 'issue' AND returned_at IS NULL
        """)
        conn.execute("COMMIT")
    except sqlite3.Error:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def seed_from_json(db_file: str, json_file: Optional[str]) -> int:
    """Load an initial catalog from a JSON list of books.

    Only runs against an empty ``books`` table.  Each item needs ``code``,
    ``title``, ``author`` and ``category``; seeded books always start
    available since there is no ledger to back an issued state.
    Returns the number of books inserted.
    """
    if not json_file or not os.path.exists(json_file):
        return 0

    conn = get_db_connection(db_file)
    try:
        book_count = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
        if book_count > 0:
            return 0

        try:
            with open(json_file, "r", encoding="utf-8") as f:
                data: List[Dict[str, Any]] = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Error reading or parsing {json_file}: {e}")
            return 0

        if not isinstance(data, list):
            logger.error(f"{json_file} must hold a JSON list of books")
            return 0

        books_to_insert = []
        for item in data:
            if not isinstance(item, dict) or not all(k in item for k in ("code", "title", "author", "category")):
                logger.warning(f"Skipping seed entry without code/title/author/category: {item!r}")
                continue
            if not all(isinstance(item[k], str) and item[k].strip() for k in ("code", "title", "author", "category")):
                logger.warning(f"Skipping seed entry with empty or non-text fields: {item!r}")
                continue
            try:
                code = BookCodeValidator.require(item["code"])
                category = Category.parse(item["category"]).value
            except (ValidationError, ValueError) as e:
                logger.warning(f"Skipping seed entry {item['code']!r}: {e}")
                continue
            books_to_insert.append((code, item["title"].strip(), item["author"].strip(), category))

        if books_to_insert:
            conn.execute("BEGIN IMMEDIATE")
            conn.executemany(
                "INSERT OR IGNORE INTO books (code, title, author, category, available) VALUES (?, ?, ?, ?, 1)",
                books_to_insert,
            )
            conn.execute("COMMIT")
        logger.info(f"Seeded {len(books_to_insert)} books from {json_file}.")
        return len(books_to_insert)
    finally:
        conn.close()


def initialize_database(db_file: str, seed_file: Optional[str] = None) -> None:
    """Initializes the database, creating tables and seeding the catalog if needed."""
    create_tables(db_file)
    seed_from_json(db_file, seed_file)
