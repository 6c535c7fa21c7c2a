"""Typed async repository over the SQLite store.

One method per entity operation; no table names cross this boundary.  Every
call runs on a worker thread (``asyncio.to_thread``) so a coroutine suspends
at each store round-trip.  sqlite errors never escape raw: constraint
violations become :class:`RecordConflict`, everything else (locked database,
busy timeout, missing file, I/O) becomes :class:`StoreUnavailable`.

Writes that must succeed or fail together go through
:meth:`LibraryStore.unit_of_work`, which holds the sqlite write lock
(``BEGIN IMMEDIATE``) for the whole unit and rolls back on any error.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from campuslib.book import Book, Category
from campuslib.database import get_db_connection, initialize_database
from campuslib.errors import RecordConflict, StoreUnavailable
from campuslib.profile import UserProfile, VerificationStatus
from campuslib.transaction import Transaction

logger = logging.getLogger(__name__)

BOOK_COLUMNS = "id, code, title, author, category, available, created_at"
PROFILE_COLUMNS = (
    "id, account_id, name, serial, email, phone, department, "
    "verification_status, id_document_path, created_at"
)
TRANSACTION_SELECT = """
    SELECT t.id, t.book_id, t.user_id, t.kind, t.issued_at, t.due_at, t.returned_at, t.created_at,
           b.code AS book_code, u.serial AS user_serial
    FROM transactions t
    JOIN books b ON b.id = t.book_id
    JOIN user_profiles u ON u.id = t.user_id
"""
OPEN_ISSUE = "kind = 'issue' AND returned_at IS NULL"


# ------------------------- SQL helpers (run on worker threads) ------------------------- #
def _book_or_none(row: Optional[sqlite3.Row]) -> Optional[Book]:
    return Book.from_dict(dict(row)) if row else None


def _profile_or_none(row: Optional[sqlite3.Row]) -> Optional[UserProfile]:
    return UserProfile.from_dict(dict(row)) if row else None


def _select_book_by_code(conn: sqlite3.Connection, code: str) -> Optional[Book]:
    # books.code is COLLATE NOCASE
    row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE code = ?", (code,)).fetchone()
    return _book_or_none(row)


def _select_book_by_id(conn: sqlite3.Connection, book_id: int) -> Optional[Book]:
    row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
    return _book_or_none(row)


def _select_books(conn: sqlite3.Connection, query: Optional[str], category: Optional[Category],
                  available: Optional[bool], limit: Optional[int], offset: int) -> List[Book]:
    clauses: List[str] = []
    params: List[Any] = []
    if query:
        like = f"%{query}%"
        clauses.append("(title LIKE ? OR author LIKE ? OR code LIKE ?)")
        params.extend([like, like, like])
    if category is not None:
        clauses.append("category = ?")
        params.append(category.value)
    if available is not None:
        clauses.append("available = ?")
        params.append(1 if available else 0)
    sql = f"SELECT {BOOK_COLUMNS} FROM books"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY code"
    if limit is not None:
        sql += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])
    return [Book.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]


def _select_profile_by_serial(conn: sqlite3.Connection, serial: str) -> Optional[UserProfile]:
    row = conn.execute(f"SELECT {PROFILE_COLUMNS} FROM user_profiles WHERE serial = ?", (serial,)).fetchone()
    return _profile_or_none(row)


def _select_profile_by_id(conn: sqlite3.Connection, user_id: int) -> Optional[UserProfile]:
    row = conn.execute(f"SELECT {PROFILE_COLUMNS} FROM user_profiles WHERE id = ?", (user_id,)).fetchone()
    return _profile_or_none(row)


def _select_transaction_by_id(conn: sqlite3.Connection, tx_id: int) -> Optional[Transaction]:
    row = conn.execute(TRANSACTION_SELECT + " WHERE t.id = ?", (tx_id,)).fetchone()
    return Transaction.from_dict(dict(row)) if row else None


def _select_transactions(conn: sqlite3.Connection, book_id: Optional[int], user_id: Optional[int],
                         open_only: bool, limit: Optional[int]) -> List[Transaction]:
    clauses: List[str] = []
    params: List[Any] = []
    if book_id is not None:
        clauses.append("t.book_id = ?")
        params.append(book_id)
    if user_id is not None:
        clauses.append("t.user_id = ?")
        params.append(user_id)
    if open_only:
        clauses.append("t.kind = 'issue' AND t.returned_at IS NULL")
    sql = TRANSACTION_SELECT
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY t.created_at DESC, t.id DESC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    return [Transaction.from_dict(dict(row)) for row in conn.execute(sql, params).fetchall()]


def _select_open_issue(conn: sqlite3.Connection, book_id: int) -> Optional[Transaction]:
    # Most recent open issue wins if, abnormally, there is more than one
    row = conn.execute(
        TRANSACTION_SELECT
        + " WHERE t.book_id = ? AND t.kind = 'issue' AND t.returned_at IS NULL"
        + " ORDER BY t.created_at DESC, t.id DESC LIMIT 1",
        (book_id,),
    ).fetchone()
    return Transaction.from_dict(dict(row)) if row else None


def _select_overdue(conn: sqlite3.Connection, now_iso: str) -> List[Transaction]:
    rows = conn.execute(
        TRANSACTION_SELECT
        + " WHERE t.kind = 'issue' AND t.returned_at IS NULL AND t.due_at < ?"
        + " ORDER BY t.due_at",
        (now_iso,),
    ).fetchall()
    return [Transaction.from_dict(dict(row)) for row in rows]


def _select_statistics(conn: sqlite3.Connection, now_iso: str) -> Dict[str, int]:
    total, available = conn.execute(
        "SELECT COUNT(*), COALESCE(SUM(available), 0) FROM books"
    ).fetchone()
    users = conn.execute("SELECT COUNT(*) FROM user_profiles").fetchone()[0]
    open_issues = conn.execute(f"SELECT COUNT(*) FROM transactions WHERE {OPEN_ISSUE}").fetchone()[0]
    overdue = conn.execute(
        f"SELECT COUNT(*) FROM transactions WHERE {OPEN_ISSUE} AND due_at < ?", (now_iso,)
    ).fetchone()[0]
    return {
        "total_books": total,
        "available": available,
        "issued": total - available,
        "users": users,
        "open_transactions": open_issues,
        "overdue": overdue,
    }


def _select_inconsistent_books(conn: sqlite3.Connection) -> List[Book]:
    open_issue = "SELECT 1 FROM transactions t WHERE t.book_id = b.id AND t.kind = 'issue' AND t.returned_at IS NULL"
    rows = conn.execute(f"""
        SELECT {BOOK_COLUMNS} FROM books b
        WHERE (b.available = 1 AND EXISTS ({open_issue}))
           OR (b.available = 0 AND NOT EXISTS ({open_issue}))
        ORDER BY b.code
    """).fetchall()
    return [Book.from_dict(dict(row)) for row in rows]


def _update_availability(conn: sqlite3.Connection, book_id: int, expected: bool, new: bool) -> int:
    """Compare-and-swap on ``books.available``; returns the affected row count."""
    cursor = conn.execute(
        "UPDATE books SET available = ? WHERE id = ? AND available = ?",
        (1 if new else 0, book_id, 1 if expected else 0),
    )
    return cursor.rowcount


def _insert_issue(conn: sqlite3.Connection, book_id: int, user_id: int,
                  issued_at: str, due_at: str) -> Transaction:
    cursor = conn.execute(
        """
        INSERT INTO transactions (book_id, user_id, kind, issued_at, due_at, returned_at, created_at)
        VALUES (?, ?, 'issue', ?, ?, NULL, ?)
        """,
        (book_id, user_id, issued_at, due_at, issued_at),
    )
    return _select_transaction_by_id(conn, cursor.lastrowid)


def _stamp_return(conn: sqlite3.Connection, tx_id: int, returned_at: str) -> int:
    cursor = conn.execute(
        "UPDATE transactions SET returned_at = ? WHERE id = ? AND kind = 'issue' AND returned_at IS NULL",
        (returned_at, tx_id),
    )
    return cursor.rowcount


def _select_max_book_number(conn: sqlite3.Connection) -> int:
    row = conn.execute(
        "SELECT MAX(CAST(SUBSTR(code, 4) AS INTEGER)) FROM books WHERE code LIKE 'LIB%'"
    ).fetchone()
    return row[0] or 0


def _insert_book(conn: sqlite3.Connection, code: str, title: str, author: str, category: Category) -> Book:
    cursor = conn.execute(
        "INSERT INTO books (code, title, author, category, available) VALUES (?, ?, ?, ?, 1)",
        (code, title, author, category.value),
    )
    return _select_book_by_id(conn, cursor.lastrowid)


def _has_history(conn: sqlite3.Connection, book_id: int) -> bool:
    return conn.execute("SELECT 1 FROM transactions WHERE book_id = ? LIMIT 1", (book_id,)).fetchone() is not None


def _delete_book(conn: sqlite3.Connection, book_id: int) -> int:
    cursor = conn.execute(
        f"""
        DELETE FROM books WHERE id = ? AND available = 1
          AND NOT EXISTS (SELECT 1 FROM transactions WHERE book_id = books.id AND {OPEN_ISSUE})
        """,
        (book_id,),
    )
    return cursor.rowcount


def _insert_profile(conn: sqlite3.Connection, profile: UserProfile) -> UserProfile:
    cursor = conn.execute(
        """
        INSERT INTO user_profiles (account_id, name, serial, email, phone, department,
                                   verification_status, id_document_path)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (profile.account_id, profile.name, profile.serial, profile.email, profile.phone,
         profile.department, profile.verification_status.value, profile.id_document_path),
    )
    return _select_profile_by_id(conn, cursor.lastrowid)


def _update_verification(conn: sqlite3.Connection, user_id: int, status: VerificationStatus) -> int:
    cursor = conn.execute(
        "UPDATE user_profiles SET verification_status = ? WHERE id = ?", (status.value, user_id)
    )
    return cursor.rowcount


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
    except sqlite3.Error as exc:
        # closing the connection discards the transaction anyway
        logger.error(f"Rollback failed: {exc}")


# ------------------------- Public repository ------------------------- #
class LibraryStore:
    """Explicitly constructed handle to one library database file."""

    def __init__(self, db_file: str, busy_timeout: float = 5.0, seed_file: Optional[str] = None) -> None:
        self.db_file = db_file
        self.busy_timeout = busy_timeout
        self.seed_file = seed_file

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"LibraryStore({self.db_file!r})"

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.IntegrityError as exc:
            raise RecordConflict(str(exc)) from exc
        except sqlite3.Error as exc:
            logger.error(f"Store call {getattr(fn, '__name__', fn)} failed: {exc}")
            raise StoreUnavailable(f"Library store unavailable: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file, timeout=self.busy_timeout)

    async def _read(self, fn: Callable[..., Any], *args: Any) -> Any:
        def run() -> Any:
            conn = self._connect()
            try:
                return fn(conn, *args)
            finally:
                conn.close()
        run.__name__ = fn.__name__
        return await self._call(run)

    async def initialize(self) -> None:
        await self._call(initialize_database, self.db_file, self.seed_file)

    async def ping(self) -> bool:
        try:
            await self._read(lambda conn: conn.execute("SELECT 1").fetchone())
            return True
        except StoreUnavailable:
            return False

    # ---- reads ----
    async def find_book_by_code(self, code: str) -> Optional[Book]:
        return await self._read(_select_book_by_code, code)

    async def get_book(self, book_id: int) -> Optional[Book]:
        return await self._read(_select_book_by_id, book_id)

    async def list_books(self, query: Optional[str] = None, category: Optional[Category] = None,
                         available: Optional[bool] = None, limit: Optional[int] = None,
                         offset: int = 0) -> List[Book]:
        return await self._read(_select_books, query, category, available, limit, offset)

    async def find_profile_by_serial(self, serial: str) -> Optional[UserProfile]:
        return await self._read(_select_profile_by_serial, serial)

    async def list_transactions(self, book_id: Optional[int] = None, user_id: Optional[int] = None,
                                open_only: bool = False, limit: Optional[int] = None) -> List[Transaction]:
        return await self._read(_select_transactions, book_id, user_id, open_only, limit)

    async def list_overdue(self, now_iso: str) -> List[Transaction]:
        return await self._read(_select_overdue, now_iso)

    async def statistics(self, now_iso: str) -> Dict[str, int]:
        return await self._read(_select_statistics, now_iso)

    async def find_inconsistent_books(self) -> List[Book]:
        return await self._read(_select_inconsistent_books)

    # ---- atomic writes ----
    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["StoreSession"]:
        """Hold the write lock for the duration of the block; commit on success, roll back on error."""
        def begin() -> sqlite3.Connection:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error:
                conn.close()
                raise
            return conn

        conn = await self._call(begin)
        try:
            yield StoreSession(self, conn)
        except Exception:
            await asyncio.to_thread(_rollback, conn)
            raise
        else:
            try:
                await self._call(conn.execute, "COMMIT")
            except StoreUnavailable:
                await asyncio.to_thread(_rollback, conn)
                raise
        finally:
            await asyncio.to_thread(conn.close)


class StoreSession:
    """Operations available inside one unit of work. All share the unit's connection."""

    def __init__(self, store: LibraryStore, conn: sqlite3.Connection) -> None:
        self._store = store
        self._conn = conn

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await self._store._call(fn, self._conn, *args)

    async def get_book(self, book_id: int) -> Optional[Book]:
        return await self._run(_select_book_by_id, book_id)

    async def find_book_by_code(self, code: str) -> Optional[Book]:
        return await self._run(_select_book_by_code, code)

    async def get_profile(self, user_id: int) -> Optional[UserProfile]:
        return await self._run(_select_profile_by_id, user_id)

    async def find_profile_by_serial(self, serial: str) -> Optional[UserProfile]:
        return await self._run(_select_profile_by_serial, serial)

    async def mark_unavailable(self, book_id: int) -> bool:
        """``available: true -> false``; False when the book was not available (or is gone)."""
        return await self._run(_update_availability, book_id, True, False) == 1

    async def mark_available(self, book_id: int) -> bool:
        """``available: false -> true``; False when the book was already available (or is gone)."""
        return await self._run(_update_availability, book_id, False, True) == 1

    async def insert_issue(self, book_id: int, user_id: int, issued_at: str, due_at: str) -> Transaction:
        return await self._run(_insert_issue, book_id, user_id, issued_at, due_at)

    async def find_open_issue(self, book_id: int) -> Optional[Transaction]:
        return await self._run(_select_open_issue, book_id)

    async def stamp_return(self, tx_id: int, returned_at: str) -> bool:
        return await self._run(_stamp_return, tx_id, returned_at) == 1

    async def get_transaction(self, tx_id: int) -> Optional[Transaction]:
        return await self._run(_select_transaction_by_id, tx_id)

    async def max_book_number(self) -> int:
        return await self._run(_select_max_book_number)

    async def insert_book(self, code: str, title: str, author: str, category: Category) -> Book:
        return await self._run(_insert_book, code, title, author, category)

    async def has_history(self, book_id: int) -> bool:
        return await self._run(_has_history, book_id)

    async def delete_book(self, book_id: int) -> bool:
        return await self._run(_delete_book, book_id) == 1

    async def insert_profile(self, profile: UserProfile) -> UserProfile:
        return await self._run(_insert_profile, profile)

    async def update_verification(self, user_id: int, status: VerificationStatus) -> bool:
        return await self._run(_update_verification, user_id, status) == 1
