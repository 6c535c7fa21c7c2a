from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from campuslib.book import Book


class TransactionKind(str, Enum):
    ISSUE = "issue"
    RETURN = "return"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Transaction:
    """One ledger entry.

    Issue rows are written once and only ever gain a ``returned_at`` stamp;
    nothing in the ledger is deleted.  ``book_code`` and ``user_serial`` are
    joined in for display and are not stored on the row.
    """
    book_id: int
    user_id: int
    kind: TransactionKind
    issued_at: str
    due_at: Optional[str] = None
    returned_at: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None
    book_code: Optional[str] = None
    user_serial: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.kind is TransactionKind.ISSUE and self.returned_at is None

    def is_overdue(self, now: datetime) -> bool:
        """True if the issue is still open and its due time lies before ``now``."""
        if not self.is_open or self.due_at is None:
            return False
        return parse_timestamp(self.due_at) < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "issued_at": self.issued_at,
            "due_at": self.due_at,
            "returned_at": self.returned_at,
            "created_at": self.created_at,
            "book_code": self.book_code,
            "user_serial": self.user_serial,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Transaction":
        return Transaction(
            id=data.get("id"),
            book_id=data["book_id"],
            user_id=data["user_id"],
            kind=TransactionKind(data["kind"]),
            issued_at=data["issued_at"],
            due_at=data.get("due_at"),
            returned_at=data.get("returned_at"),
            created_at=data.get("created_at"),
            book_code=data.get("book_code"),
            user_serial=data.get("user_serial"),
        )


@dataclass
class CirculationReceipt:
    """What a successful issue or return reports back to the operator."""
    book: Book
    transaction: Optional[Transaction]
    repaired: bool = False

    @property
    def due_at(self) -> Optional[str]:
        return self.transaction.due_at if self.transaction else None

    @property
    def returned_at(self) -> Optional[str]:
        return self.transaction.returned_at if self.transaction else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "book": self.book.to_dict(),
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "due_at": self.due_at,
            "returned_at": self.returned_at,
            "repaired": self.repaired,
        }
