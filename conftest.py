import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from campuslib.catalog import CatalogLookup
from campuslib.circulation import CirculationService
from campuslib.database import get_db_connection
from campuslib.management import CatalogManager, ProfileRegistry
from campuslib.services.identity_service import StaticAuthorizer
from campuslib.store import LibraryStore

ADMIN = "admin-1"


class FixedClock:
    """Deterministic clock for circulation tests."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def store(db_file):
    s = LibraryStore(db_file, busy_timeout=5.0)
    asyncio.run(s.initialize())
    return s


@pytest.fixture
def authorizer():
    return StaticAuthorizer([ADMIN])


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def catalog(store):
    return CatalogLookup(store)


@pytest.fixture
def circulation(store, authorizer, catalog, clock):
    return CirculationService(store, authorizer, catalog=catalog, clock=clock)


@pytest.fixture
def manager(store, authorizer):
    return CatalogManager(store, authorizer)


@pytest.fixture
def registry(store, authorizer):
    return ProfileRegistry(store, authorizer)


@pytest.fixture
def seeded(manager, registry):
    """Three books (LIB001..LIB003) and two users (1XX21CS001, 1XX21CS002)."""
    async def seed():
        books = [
            await manager.add_book("The Hobbit", "J. R. R. Tolkien", "Fiction", actor_id=ADMIN),
            await manager.add_book("A Brief History of Time", "Stephen Hawking", "Science", actor_id=ADMIN),
            await manager.add_book("Clean Code", "Robert C. Martin", "Technology", actor_id=ADMIN),
        ]
        users = [
            await registry.register("Asha Rao", "1XX21CS001", "asha@university.edu", department="Computer Science"),
            await registry.register("Ben Okafor", "1xx21cs002", "ben@university.edu", phone="+1 555 123 4567"),
        ]
        return books, users
    return asyncio.run(seed())


@pytest.fixture
def raw_db(db_file):
    """Direct sqlite access, for arranging states the services refuse to create."""
    conn = get_db_connection(db_file)
    yield conn
    conn.close()


@pytest.fixture
def check_invariant(raw_db):
    """Assert available == (no open issue) for every book, and at most one open issue per book."""
    def check():
        rows = raw_db.execute("""
            SELECT b.code, b.available,
                   (SELECT COUNT(*) FROM transactions t
                    WHERE t.book_id = b.id AND t.kind = 'issue' AND t.returned_at IS NULL) AS open_count
            FROM books b
        """).fetchall()
        for code, available, open_count in rows:
            assert open_count <= 1, f"{code} has {open_count} open issues"
            assert bool(available) == (open_count == 0), f"{code}: available={available}, open={open_count}"
    return check
