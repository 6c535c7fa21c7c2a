import re
from typing import Optional

from campuslib.errors import ValidationError

BOOK_CODE_PREFIX = "LIB"
BOOK_CODE_RE = re.compile(r"^LIB\d{3,}$")
SERIAL_RE = re.compile(r"^\d[A-Z]{2}\d{2}[A-Z]{2}\d{3}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class BookCodeValidator:
    """Book codes look like ``LIB001``; matching is case-insensitive."""

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.strip().upper()

    @staticmethod
    def is_valid(code: Optional[str]) -> bool:
        return bool(BOOK_CODE_RE.match(BookCodeValidator.normalize(code)))

    @staticmethod
    def require(raw: Optional[str]) -> str:
        code = BookCodeValidator.normalize(raw)
        if not code:
            raise ValidationError("Book code cannot be empty.")
        if not BOOK_CODE_RE.match(code):
            raise ValidationError(f"Invalid book code {code!r}. Expected LIB followed by digits, e.g. LIB001.")
        return code

    @staticmethod
    def format(number: int) -> str:
        return f"{BOOK_CODE_PREFIX}{number:03d}"


class SerialValidator:
    """Institutional serial numbers: digit, 2 letters, 2 digits, 2 letters, 3 digits (e.g. 1XX21CS001)."""

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.strip().upper()

    @staticmethod
    def is_valid(serial: Optional[str]) -> bool:
        return bool(SERIAL_RE.match(SerialValidator.normalize(serial)))

    @staticmethod
    def require(raw: Optional[str]) -> str:
        serial = SerialValidator.normalize(raw)
        if not serial:
            raise ValidationError("Serial number cannot be empty.")
        if not SERIAL_RE.match(serial):
            raise ValidationError(f"Invalid serial number {serial!r}. Expected a value like 1XX21CS001.")
        return serial


class TextValidator:
    """Basic checks for free-text fields on registration and catalog forms."""

    @staticmethod
    def require_text(value: Optional[str], field_name: str) -> str:
        if value is None or not value.strip():
            raise ValidationError(f"{field_name} cannot be empty.")
        return value.strip()

    @staticmethod
    def require_name(value: Optional[str]) -> str:
        name = TextValidator.require_text(value, "Name")
        # must contain letters, not digits only
        if not any(c.isalpha() for c in name):
            raise ValidationError("Name must contain letters.")
        return name

    @staticmethod
    def require_email(value: Optional[str]) -> str:
        email = TextValidator.require_text(value, "Email").lower()
        if not EMAIL_RE.match(email):
            raise ValidationError(f"Invalid email address {email!r}.")
        return email

    @staticmethod
    def clean_phone(value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        phone = value.strip()
        digits = [c for c in phone if c.isdigit()]
        if len(digits) < 7 or any(not (c.isdigit() or c in "+-() ") for c in phone):
            raise ValidationError(f"Invalid phone number {phone!r}.")
        return phone
