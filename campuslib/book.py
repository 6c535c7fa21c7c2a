from __future__ import annotations

from enum import Enum


class Category(str, Enum):
    FICTION = "Fiction"
    SCIENCE = "Science"
    TECHNOLOGY = "Technology"
    HISTORY = "History"
    PHILOSOPHY = "Philosophy"
    ARTS = "Arts"
    MATHEMATICS = "Mathematics"

    @classmethod
    def parse(cls, value: str | Category) -> "Category":
        """Accept a category by value or name, ignoring case."""
        if isinstance(value, Category):
            return value
        text = (value or "").strip()
        for member in cls:
            if text.lower() in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown category {value!r}. Allowed: {', '.join(c.value for c in cls)}")


class Book:
    """Represents a single catalogued copy of a book."""

    def __init__(self, code: str, title: str, author: str, category: Category | str,
                 available: bool = True, id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.code = code.strip().upper()
        self.title = title.strip()
        self.author = author.strip()
        self.category = Category.parse(category)
        self.available = bool(available)
        self.created_at = created_at

    @property
    def status(self) -> str:
        return "Available" if self.available else "Issued"

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.code}: {self.title} by {self.author} [{self.status}]"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Book):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "author": self.author,
            "category": self.category.value,
            "available": self.available,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # sqlite stores the flag as 0/1
        return Book(
            id=data.get("id"),
            code=data["code"],
            title=data["title"],
            author=data["author"],
            category=data["category"],
            available=bool(data.get("available", True)),
            created_at=data.get("created_at"),
        )
