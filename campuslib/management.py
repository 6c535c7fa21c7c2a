import logging
from typing import Optional

from campuslib.book import Book, Category
from campuslib.errors import (
    BookUnavailable,
    NotAuthorized,
    NotFound,
    RecordConflict,
    ValidationError,
)
from campuslib.profile import UserProfile, VerificationStatus
from campuslib.services.identity_service import Authorizer
from campuslib.store import LibraryStore
from campuslib.validators import BookCodeValidator, SerialValidator, TextValidator

logger = logging.getLogger(__name__)


async def _require_admin(authorizer: Authorizer, actor_id: Optional[str]) -> None:
    if not actor_id or not await authorizer.is_authorized(actor_id.strip()):
        raise NotAuthorized(f"{actor_id or 'Anonymous caller'} is not allowed to manage the catalog.")


class CatalogManager:
    """Adds and removes catalogued books. Never touches availability of an existing book."""

    def __init__(self, store: LibraryStore, authorizer: Authorizer) -> None:
        self.store = store
        self.authorizer = authorizer

    async def add_book(self, title: str, author: str, category: str, *, actor_id: str) -> Book:
        """Add a book under the next free ``LIB###`` code. New books start available."""
        await _require_admin(self.authorizer, actor_id)
        title = TextValidator.require_text(title, "Title")
        author = TextValidator.require_text(author, "Author")
        try:
            parsed = Category.parse(category)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        async with self.store.unit_of_work() as uow:
            code = BookCodeValidator.format(await uow.max_book_number() + 1)
            book = await uow.insert_book(code, title, author, parsed)
        logger.info(f"Added {book.code}: {book.title} by {book.author}")
        return book

    async def remove_book(self, code: str, *, actor_id: str) -> Book:
        """Delete a book that is on the shelf and has never circulated."""
        await _require_admin(self.authorizer, actor_id)
        norm = BookCodeValidator.require(code)
        async with self.store.unit_of_work() as uow:
            book = await uow.find_book_by_code(norm)
            if book is None:
                raise NotFound(f"No book found with code {norm}.")
            if not book.available or await uow.find_open_issue(book.id) is not None:
                raise BookUnavailable(f"{norm} is currently issued and cannot be deleted.")
            if await uow.has_history(book.id):
                raise RecordConflict(f"{norm} has circulation history; the ledger cannot be deleted.")
            if not await uow.delete_book(book.id):
                raise BookUnavailable(f"{norm} is currently issued and cannot be deleted.")
        logger.info(f"Removed {norm} from the catalog")
        return book


class ProfileRegistry:
    """User registration and document-verification status."""

    def __init__(self, store: LibraryStore, authorizer: Authorizer) -> None:
        self.store = store
        self.authorizer = authorizer

    async def register(self, name: str, serial: str, email: str, phone: Optional[str] = None,
                       department: Optional[str] = None, account_id: Optional[str] = None,
                       id_document_path: Optional[str] = None) -> UserProfile:
        profile = UserProfile(
            name=TextValidator.require_name(name),
            serial=SerialValidator.require(serial),
            email=TextValidator.require_email(email),
            phone=TextValidator.clean_phone(phone),
            department=department.strip() if department and department.strip() else None,
            account_id=account_id.strip() if account_id and account_id.strip() else None,
            id_document_path=id_document_path or None,
        )
        try:
            async with self.store.unit_of_work() as uow:
                if await uow.find_profile_by_serial(profile.serial) is not None:
                    raise RecordConflict(f"Serial number {profile.serial} is already registered.")
                created = await uow.insert_profile(profile)
        except RecordConflict:
            logger.info(f"Registration refused for {profile.serial}: duplicate serial or account")
            raise
        logger.info(f"Registered {created.serial} ({created.name}), verification pending")
        return created

    async def set_verification_status(self, serial: str, status: str, *, actor_id: str) -> UserProfile:
        await _require_admin(self.authorizer, actor_id)
        norm = SerialValidator.require(serial)
        try:
            new_status = VerificationStatus((status or "").strip().lower())
        except ValueError as e:
            raise ValidationError(
                f"Unknown verification status {status!r}. Allowed: pending, verified, rejected."
            ) from e
        async with self.store.unit_of_work() as uow:
            profile = await uow.find_profile_by_serial(norm)
            if profile is None:
                raise NotFound(f"No user found with serial number {norm}.")
            await uow.update_verification(profile.id, new_status)
            updated = await uow.get_profile(profile.id)
        logger.info(f"Verification status of {norm} set to {new_status.value} by {actor_id}")
        return updated
