from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass
class UserProfile:
    """A registered library user, keyed by institutional serial number."""
    name: str
    serial: str
    email: str
    phone: Optional[str] = None
    department: Optional[str] = None
    account_id: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    id_document_path: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return self.verification_status is VerificationStatus.VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["verification_status"] = self.verification_status.value
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "UserProfile":
        return UserProfile(
            id=data.get("id"),
            account_id=data.get("account_id"),
            name=data["name"],
            serial=data["serial"],
            email=data["email"],
            phone=data.get("phone"),
            department=data.get("department"),
            verification_status=VerificationStatus(data.get("verification_status") or "pending"),
            id_document_path=data.get("id_document_path"),
            created_at=data.get("created_at"),
        )
