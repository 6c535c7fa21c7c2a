"""Issue/return state machine for catalogued books.

A book is either ``Available`` or ``Issued``::

    Available --issue(user)--> Issued      [guard: available]
    Issued    --return()-->    Available   [guard: not available]

The guard and the flip are a single conditional write in the store (compare
and swap on ``books.available``), never a check against a previously read
snapshot, so two operators racing on the same copy cannot both win.  The flip
and the ledger write share one unit of work: either both land or neither
does.

This service is the only writer of ledger rows and of ``books.available``.
It never retries; a :class:`StoreUnavailable` means the outcome is unknown
and the caller should re-resolve the book before trying again.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from campuslib.book import Book
from campuslib.catalog import CatalogLookup
from campuslib.errors import (
    BookNotIssued,
    BookUnavailable,
    GuardViolation,
    InconsistentState,
    LookupFailed,
    NotAuthorized,
    NotFound,
    ProfileNotVerified,
    RecordConflict,
    StoreUnavailable,
    ValidationError,
)
from campuslib.profile import UserProfile
from campuslib.services.identity_service import Authorizer
from campuslib.store import LibraryStore
from campuslib.transaction import CirculationReceipt, Transaction

logger = logging.getLogger(__name__)

LOAN_PERIOD_DAYS = 14


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class CirculationService:
    """Runs issue and return transitions against an explicitly supplied store."""

    def __init__(self, store: LibraryStore, authorizer: Authorizer,
                 catalog: Optional[CatalogLookup] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 loan_period_days: int = LOAN_PERIOD_DAYS,
                 require_verified_profile: bool = False) -> None:
        if loan_period_days < 1:
            raise ValueError("loan_period_days must be at least 1.")
        self.store = store
        self.authorizer = authorizer
        self.catalog = catalog or CatalogLookup(store)
        self.clock = clock or utc_now
        self.loan_period = timedelta(days=loan_period_days)
        self.require_verified_profile = require_verified_profile

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    async def _authorize(self, actor_id: Optional[str]) -> None:
        if not actor_id or not actor_id.strip():
            raise NotAuthorized("A signed-in operator is required for circulation operations.")
        if not await self.authorizer.is_authorized(actor_id.strip()):
            logger.warning(f"Circulation refused for unauthorized actor {actor_id!r}")
            raise NotAuthorized(f"{actor_id} is not allowed to issue or return books.")

    # ------------------------- Transitions ------------------------- #
    async def issue(self, book: Book, user: UserProfile, *, actor_id: str) -> CirculationReceipt:
        """Available -> Issued. Appends an open issue row due ``loan_period`` from now."""
        await self._authorize(actor_id)
        return await self._issue(book, user)

    async def return_book(self, book: Book, *, actor_id: str, override: bool = False) -> CirculationReceipt:
        """Issued -> Available. Stamps the open issue row with the return time.

        If the book is flagged issued but has no open issue row, the ledger and
        the flag disagree: this raises :class:`InconsistentState` and changes
        nothing, unless ``override`` is set, in which case the book is flipped
        back to available and the repair is logged.
        """
        await self._authorize(actor_id)
        return await self._return(book, override)

    async def issue_by_code(self, book_code: str, serial: str, *, actor_id: str) -> CirculationReceipt:
        await self._authorize(actor_id)
        book = await self.catalog.find_book_by_code(book_code)
        user = await self.catalog.find_user_by_serial(serial)
        return await self._issue(book, user)

    async def return_by_code(self, book_code: str, *, actor_id: str, override: bool = False) -> CirculationReceipt:
        await self._authorize(actor_id)
        book = await self.catalog.find_book_by_code(book_code)
        return await self._return(book, override)

    async def _issue(self, book: Book, user: UserProfile) -> CirculationReceipt:
        if book.id is None or user.id is None:
            raise ValidationError("Issue needs a book and a user resolved from the catalog.")
        if self.require_verified_profile and not user.is_verified:
            logger.info(f"Issue of {book.code} refused: {user.serial} is {user.verification_status.value}")
            raise ProfileNotVerified(f"{user.serial} has not completed identity verification.")

        now = self._now()
        issued_at = to_iso(now)
        due_at = to_iso(now + self.loan_period)
        try:
            async with self.store.unit_of_work() as uow:
                if await uow.get_profile(user.id) is None:
                    raise NotFound(f"No user found with serial number {user.serial}.")
                if not await uow.mark_unavailable(book.id):
                    if await uow.get_book(book.id) is None:
                        raise NotFound(f"No book found with code {book.code}.")
                    raise BookUnavailable(f"{book.code} is currently issued to another user.")
                try:
                    transaction = await uow.insert_issue(book.id, user.id, issued_at, due_at)
                except RecordConflict as exc:
                    # flag said available, but the ledger already holds an open issue
                    logger.error(f"Ledger already has an open issue for {book.code} while it was marked available")
                    raise InconsistentState(
                        f"{book.code} was marked available but already has an open issue transaction."
                    ) from exc
                updated = await uow.get_book(book.id)
        except GuardViolation as e:
            logger.info(f"Issue of {book.code} to {user.serial} refused: {e.message}")
            raise
        except StoreUnavailable:
            logger.error(f"Issue of {book.code} to {user.serial} did not complete; outcome unknown")
            raise

        logger.info(f"Issued {book.code} to {user.serial}, due {due_at}")
        return CirculationReceipt(book=updated, transaction=transaction)

    async def _return(self, book: Book, override: bool) -> CirculationReceipt:
        if book.id is None:
            raise ValidationError("Return needs a book resolved from the catalog.")

        returned_at = to_iso(self._now())
        transaction: Optional[Transaction] = None
        repaired = False
        try:
            async with self.store.unit_of_work() as uow:
                if not await uow.mark_available(book.id):
                    if await uow.get_book(book.id) is None:
                        raise NotFound(f"No book found with code {book.code}.")
                    raise BookNotIssued(f"{book.code} is not currently issued.")

                open_issue = await uow.find_open_issue(book.id)
                if open_issue is None:
                    if not override:
                        logger.error(f"{book.code} is marked issued but has no open issue transaction")
                        raise InconsistentState(
                            f"{book.code} is marked issued but no open issue transaction exists. "
                            "An administrator must review it or return it with override."
                        )
                    logger.warning(f"Override: marking {book.code} available without an open issue transaction")
                    repaired = True
                else:
                    if not await uow.stamp_return(open_issue.id, returned_at):
                        raise InconsistentState(f"Open issue transaction {open_issue.id} could not be closed.")
                    transaction = await uow.get_transaction(open_issue.id)
                updated = await uow.get_book(book.id)
        except GuardViolation as e:
            logger.info(f"Return of {book.code} refused: {e.message}")
            raise
        except StoreUnavailable:
            logger.error(f"Return of {book.code} did not complete; outcome unknown")
            raise

        if transaction is not None:
            logger.info(f"Returned {book.code} from {transaction.user_serial} at {returned_at}")
        return CirculationReceipt(book=updated, transaction=transaction, repaired=repaired)

    # ------------------------- Ledger queries ------------------------- #
    async def history(self, book_code: Optional[str] = None, serial: Optional[str] = None,
                      open_only: bool = False, limit: Optional[int] = None) -> List[Transaction]:
        """Ledger entries, newest first, optionally narrowed to one book and/or user."""
        book_id = (await self.catalog.find_book_by_code(book_code)).id if book_code else None
        user_id = (await self.catalog.find_user_by_serial(serial)).id if serial else None
        if limit is not None and limit < 1:
            raise ValidationError("limit must be positive.")
        try:
            return await self.store.list_transactions(book_id, user_id, open_only, limit)
        except StoreUnavailable as exc:
            raise LookupFailed(f"Could not read the transaction ledger: {exc.message}") from exc

    async def overdue(self) -> List[Transaction]:
        """Open issues whose due time has passed."""
        try:
            return await self.store.list_overdue(to_iso(self._now()))
        except StoreUnavailable as exc:
            raise LookupFailed(f"Could not read the transaction ledger: {exc.message}") from exc

    async def statistics(self) -> Dict[str, int]:
        try:
            return await self.store.statistics(to_iso(self._now()))
        except StoreUnavailable as exc:
            raise LookupFailed(f"Could not compute statistics: {exc.message}") from exc

    async def audit(self) -> List[Book]:
        """Books whose availability flag disagrees with the ledger. Reports only; never repairs."""
        try:
            books = await self.store.find_inconsistent_books()
        except StoreUnavailable as exc:
            raise LookupFailed(f"Could not audit the catalog: {exc.message}") from exc
        for b in books:
            logger.warning(f"Invariant violation: {b.code} available={b.available} disagrees with the ledger")
        return books
