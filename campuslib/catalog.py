import logging
from typing import List, Optional

from campuslib.book import Book, Category
from campuslib.errors import LookupFailed, NotFound, StoreUnavailable, ValidationError
from campuslib.profile import UserProfile
from campuslib.store import LibraryStore
from campuslib.validators import BookCodeValidator, SerialValidator

logger = logging.getLogger(__name__)


class CatalogLookup:
    """Resolves operator-entered book codes and user serials to records. Read-only."""

    def __init__(self, store: LibraryStore) -> None:
        self.store = store

    async def find_book_by_code(self, code: str) -> Book:
        """Find a book by its code, case-insensitively (``lib001`` == ``LIB001``)."""
        norm = BookCodeValidator.require(code)
        try:
            book = await self.store.find_book_by_code(norm)
        except StoreUnavailable as exc:
            raise LookupFailed(f"Could not look up book {norm}: {exc.message}") from exc
        if book is None:
            raise NotFound(f"No book found with code {norm}.")
        return book

    async def find_user_by_serial(self, serial: str) -> UserProfile:
        """Find a user profile by institutional serial number, case-insensitively."""
        norm = SerialValidator.require(serial)
        try:
            profile = await self.store.find_profile_by_serial(norm)
        except StoreUnavailable as exc:
            raise LookupFailed(f"Could not look up user {norm}: {exc.message}") from exc
        if profile is None:
            raise NotFound(f"No user found with serial number {norm}.")
        return profile

    async def list_books(self, query: Optional[str] = None, category: Optional[str] = None,
                         available: Optional[bool] = None, limit: Optional[int] = None,
                         offset: int = 0) -> List[Book]:
        """Browse the catalog: substring search over title, author and code, plus filters."""
        parsed: Optional[Category] = None
        if category and category.strip().lower() != "all":
            try:
                parsed = Category.parse(category)
            except ValueError as e:
                raise ValidationError(str(e)) from e
        if limit is not None and limit < 1:
            raise ValidationError("limit must be positive.")
        if offset < 0:
            raise ValidationError("offset cannot be negative.")
        q = query.strip() if query and query.strip() else None
        try:
            return await self.store.list_books(q, parsed, available, limit, offset)
        except StoreUnavailable as exc:
            raise LookupFailed(f"Could not list books: {exc.message}") from exc
