import asyncio
import random
import sqlite3
from datetime import datetime, timedelta

import pytest

from campuslib.circulation import CirculationService
from campuslib.errors import (
    BookNotIssued,
    BookUnavailable,
    InconsistentState,
    LookupFailed,
    NotAuthorized,
    NotFound,
    ProfileNotVerified,
    StoreUnavailable,
)
from campuslib.services.identity_service import StaticAuthorizer
from campuslib.store import LibraryStore, StoreSession
from campuslib.transaction import TransactionKind

ADMIN = "admin-1"


def test_issue_sets_due_date_fourteen_days_out(seeded, circulation, clock):
    (hobbit, *_), (asha, _) = seeded
    receipt = asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))

    assert receipt.book.available is False
    tx = receipt.transaction
    assert tx.kind is TransactionKind.ISSUE
    assert tx.user_serial == "1XX21CS001"
    assert tx.book_code == "LIB001"
    assert tx.returned_at is None
    issued = datetime.fromisoformat(tx.issued_at)
    assert issued == clock.now
    assert datetime.fromisoformat(receipt.due_at) - issued == timedelta(days=14)


def test_second_issue_of_same_book_is_refused(seeded, circulation, store, check_invariant):
    (hobbit, *_), (asha, ben) = seeded
    asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))

    with pytest.raises(BookUnavailable):
        asyncio.run(circulation.issue_by_code("lib001", "1XX21CS002", actor_id=ADMIN))

    ledger = asyncio.run(store.list_transactions(book_id=hobbit.id))
    assert len(ledger) == 1
    assert ledger[0].user_serial == "1XX21CS001"
    check_invariant()


def test_issue_then_return_restores_availability(seeded, circulation, store, clock, check_invariant):
    (hobbit, *_), (asha, _) = seeded
    asyncio.run(circulation.issue_by_code("LIB001", "1XX21CS001", actor_id=ADMIN))
    clock.advance(days=3)
    receipt = asyncio.run(circulation.return_by_code("lib001", actor_id=ADMIN))

    assert receipt.book.available is True
    assert receipt.repaired is False
    assert datetime.fromisoformat(receipt.returned_at) == clock.now
    assert receipt.transaction.is_open is False
    check_invariant()

    ledger = asyncio.run(store.list_transactions(book_id=hobbit.id))
    assert len(ledger) == 1
    assert ledger[0].kind is TransactionKind.ISSUE
    assert ledger[0].returned_at is not None

    # the copy can circulate again
    again = asyncio.run(circulation.issue_by_code("LIB001", "1XX21CS002", actor_id=ADMIN))
    assert again.book.available is False
    check_invariant()


def test_return_of_available_book_is_refused(seeded, circulation, store):
    with pytest.raises(BookNotIssued):
        asyncio.run(circulation.return_by_code("LIB002", actor_id=ADMIN))
    assert asyncio.run(store.list_transactions()) == []


def test_return_uses_a_stale_snapshot_safely(seeded, circulation, check_invariant):
    (hobbit, *_), (asha, _) = seeded
    asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))
    # `hobbit` still says available=True; the store decides
    receipt = asyncio.run(circulation.return_book(hobbit, actor_id=ADMIN))
    assert receipt.book.available is True
    with pytest.raises(BookNotIssued):
        asyncio.run(circulation.return_book(hobbit, actor_id=ADMIN))
    check_invariant()


def test_concurrent_issues_have_exactly_one_winner(seeded, circulation, store, check_invariant):
    (hobbit, *_), (asha, ben) = seeded

    async def race():
        return await asyncio.gather(
            circulation.issue(hobbit, asha, actor_id=ADMIN),
            circulation.issue(hobbit, ben, actor_id=ADMIN),
            return_exceptions=True,
        )

    results = asyncio.run(race())
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], BookUnavailable)
    assert len(asyncio.run(store.list_transactions(book_id=hobbit.id))) == 1
    check_invariant()


def test_concurrent_returns_have_exactly_one_winner(seeded, circulation, check_invariant):
    (hobbit, *_), (asha, _) = seeded
    asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))

    async def race():
        return await asyncio.gather(
            circulation.return_book(hobbit, actor_id=ADMIN),
            circulation.return_book(hobbit, actor_id=ADMIN),
            return_exceptions=True,
        )

    results = asyncio.run(race())
    assert sum(1 for r in results if isinstance(r, BookNotIssued)) == 1
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    check_invariant()


def test_failed_ledger_write_leaves_book_available(seeded, circulation, store, monkeypatch, check_invariant):
    (hobbit, *_), (asha, _) = seeded

    async def broken_insert(self, *args):
        raise StoreUnavailable("disk I/O error")

    monkeypatch.setattr(StoreSession, "insert_issue", broken_insert)
    with pytest.raises(StoreUnavailable):
        asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))

    assert asyncio.run(store.get_book(hobbit.id)).available is True
    assert asyncio.run(store.list_transactions()) == []
    check_invariant()


@pytest.mark.parametrize("failing_step", ["find_open_issue", "stamp_return"])
def test_failed_return_leaves_book_issued(seeded, circulation, store, monkeypatch, check_invariant, failing_step):
    (hobbit, *_), (asha, _) = seeded
    issued = asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))

    async def broken_step(self, *args):
        raise StoreUnavailable("disk I/O error")

    monkeypatch.setattr(StoreSession, failing_step, broken_step)
    with pytest.raises(StoreUnavailable):
        asyncio.run(circulation.return_book(hobbit, actor_id=ADMIN))

    # the availability flip was rolled back with the failed ledger step
    assert asyncio.run(store.get_book(hobbit.id)).available is False
    still_open = asyncio.run(store.list_transactions(book_id=hobbit.id, open_only=True))
    assert [t.id for t in still_open] == [issued.transaction.id]
    check_invariant()

    monkeypatch.undo()
    receipt = asyncio.run(circulation.return_book(hobbit, actor_id=ADMIN))
    assert receipt.transaction.id == issued.transaction.id
    check_invariant()


def test_busy_store_reports_unknown_outcome(seeded, store, db_file, authorizer, clock):
    (hobbit, *_), (asha, _) = seeded
    impatient = CirculationService(LibraryStore(db_file, busy_timeout=0.1), authorizer, clock=clock)
    blocker = sqlite3.connect(db_file, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreUnavailable) as exc_info:
            asyncio.run(impatient.issue(hobbit, asha, actor_id=ADMIN))
        assert exc_info.value.retryable is True
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
    assert asyncio.run(store.get_book(hobbit.id)).available is True


def test_issue_to_deleted_user_is_not_found(seeded, circulation, raw_db):
    (hobbit, *_), (asha, _) = seeded
    raw_db.execute("DELETE FROM user_profiles WHERE id = ?", (asha.id,))
    with pytest.raises(NotFound):
        asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))


def test_flag_issued_without_open_transaction_is_inconsistent(seeded, circulation, raw_db, store):
    raw_db.execute("UPDATE books SET available = 0 WHERE code = 'LIB003'")

    with pytest.raises(InconsistentState):
        asyncio.run(circulation.return_by_code("LIB003", actor_id=ADMIN))
    # nothing changed
    assert asyncio.run(store.find_book_by_code("LIB003")).available is False

    receipt = asyncio.run(circulation.return_by_code("LIB003", actor_id=ADMIN, override=True))
    assert receipt.repaired is True
    assert receipt.transaction is None
    assert receipt.book.available is True
    assert asyncio.run(store.list_transactions()) == []


def test_flag_available_with_open_transaction_is_inconsistent(seeded, circulation, raw_db, store):
    (hobbit, *_), (asha, ben) = seeded
    asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))
    raw_db.execute("UPDATE books SET available = 1 WHERE id = ?", (hobbit.id,))

    with pytest.raises(InconsistentState):
        asyncio.run(circulation.issue(hobbit, ben, actor_id=ADMIN))
    # rolled back: the flag flip did not stick
    assert asyncio.run(store.get_book(hobbit.id)).available is True
    assert len(asyncio.run(store.list_transactions(book_id=hobbit.id))) == 1


def test_return_closes_most_recent_open_issue(seeded, circulation, raw_db, store):
    (hobbit, *_), (asha, ben) = seeded
    asyncio.run(circulation.issue(hobbit, asha, actor_id=ADMIN))
    # arrange a second open issue, which the store normally refuses
    raw_db.execute("DROP INDEX idx_transactions_open_issue")
    raw_db.execute(
        "INSERT INTO transactions (book_id, user_id, kind, issued_at, due_at, returned_at, created_at) "
        "VALUES (?, ?, 'issue', ?, ?, NULL, ?)",
        (hobbit.id, ben.id, "2026-02-01T00:00:00.000000+00:00",
         "2026-02-15T00:00:00.000000+00:00", "2026-02-01T00:00:00.000000+00:00"),
    )

    receipt = asyncio.run(circulation.return_book(hobbit, actor_id=ADMIN))
    assert receipt.transaction.user_serial == "1XX21CS002"

    still_open = asyncio.run(store.list_transactions(book_id=hobbit.id, open_only=True))
    assert [t.user_serial for t in still_open] == ["1XX21CS001"]
    assert [b.code for b in asyncio.run(circulation.audit())] == ["LIB001"]


def test_unauthorized_actor_cannot_circulate(seeded, store, clock):
    (hobbit, *_), (asha, _) = seeded
    service = CirculationService(store, StaticAuthorizer(["someone-else"]), clock=clock)

    with pytest.raises(NotAuthorized):
        asyncio.run(service.issue(hobbit, asha, actor_id=ADMIN))
    with pytest.raises(NotAuthorized):
        asyncio.run(service.return_by_code("LIB001", actor_id=""))
    assert asyncio.run(store.get_book(hobbit.id)).available is True


def test_unverified_profile_is_refused_when_required(seeded, store, authorizer, clock, registry):
    (hobbit, *_), (asha, _) = seeded
    strict = CirculationService(store, authorizer, clock=clock, require_verified_profile=True)

    with pytest.raises(ProfileNotVerified):
        asyncio.run(strict.issue(hobbit, asha, actor_id=ADMIN))

    asyncio.run(registry.set_verification_status("1XX21CS001", "verified", actor_id=ADMIN))
    receipt = asyncio.run(strict.issue_by_code("LIB001", "1XX21CS001", actor_id=ADMIN))
    assert receipt.book.available is False


def test_loan_period_must_be_positive(store, authorizer):
    with pytest.raises(ValueError):
        CirculationService(store, authorizer, loan_period_days=0)


def test_history_overdue_and_statistics(seeded, circulation, clock):
    asyncio.run(circulation.issue_by_code("LIB001", "1XX21CS001", actor_id=ADMIN))
    clock.advance(days=2)
    asyncio.run(circulation.issue_by_code("LIB002", "1XX21CS002", actor_id=ADMIN))
    clock.advance(days=1)
    asyncio.run(circulation.return_by_code("LIB002", actor_id=ADMIN))

    history = asyncio.run(circulation.history())
    assert [t.book_code for t in history] == ["LIB002", "LIB001"]
    assert [t.book_code for t in asyncio.run(circulation.history(serial="1xx21cs001"))] == ["LIB001"]
    assert [t.book_code for t in asyncio.run(circulation.history(open_only=True))] == ["LIB001"]
    assert len(asyncio.run(circulation.history(limit=1))) == 1

    assert asyncio.run(circulation.overdue()) == []
    clock.advance(days=12)
    overdue = asyncio.run(circulation.overdue())
    assert [t.book_code for t in overdue] == ["LIB001"]
    assert overdue[0].is_overdue(clock.now)

    stats = asyncio.run(circulation.statistics())
    assert stats == {
        "total_books": 3,
        "available": 2,
        "issued": 1,
        "users": 2,
        "open_transactions": 1,
        "overdue": 1,
    }


def test_history_for_unknown_book_is_not_found(seeded, circulation):
    with pytest.raises(NotFound):
        asyncio.run(circulation.history(book_code="LIB404"))


def test_ledger_reads_on_unreachable_store_are_lookup_failures(tmp_path, authorizer):
    service = CirculationService(LibraryStore(str(tmp_path / "missing" / "library.db")), authorizer)
    with pytest.raises(LookupFailed):
        asyncio.run(service.statistics())
    with pytest.raises(LookupFailed):
        asyncio.run(service.audit())


def test_random_operation_sequences_keep_availability_in_sync(seeded, circulation, clock, check_invariant):
    rng = random.Random(20260115)
    codes = ["LIB001", "LIB002", "LIB003"]
    serials = ["1XX21CS001", "1XX21CS002"]

    for _ in range(60):
        code = rng.choice(codes)
        clock.advance(hours=rng.randint(1, 48))
        try:
            if rng.random() < 0.5:
                asyncio.run(circulation.issue_by_code(code, rng.choice(serials), actor_id=ADMIN))
            else:
                asyncio.run(circulation.return_by_code(code, actor_id=ADMIN))
        except (BookUnavailable, BookNotIssued):
            pass
        check_invariant()

    assert asyncio.run(circulation.audit()) == []
