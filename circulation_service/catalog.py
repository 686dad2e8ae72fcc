import logging
from dataclasses import dataclass
from typing import Optional

from .callnumbers import generate_call_number
from .models import Book

logger = logging.getLogger(__name__)


@dataclass
class CatalogMetadata:
    """What the cataloguing path hands over; bibliographic fields are not checked."""

    title: str
    author: Optional[str] = None
    total_copies: int = 1
    call_number: Optional[str] = None
    category: Optional[str] = None
    year: Optional[int] = None

    @classmethod
    def from_dict(cls, data):
        year = data.get("year")
        return cls(
            title=data["title"],
            author=data.get("author"),
            total_copies=int(data.get("total_copies", 1)),
            call_number=data.get("call_number"),
            category=data.get("category"),
            year=int(year) if year else None,
        )


def add_book(session, sequence, metadata):
    """
    Create a catalog entry with a fresh accession id. The counter increment
    runs in `session`, so a failed insert rolls the number back with it.
    """
    if metadata.total_copies < 0:
        raise ValueError("total_copies cannot be negative")

    accession_id = sequence.next_accession_id(session=session)
    call_number = metadata.call_number
    if not call_number or not call_number.strip():
        call_number = generate_call_number(metadata.category, metadata.author, metadata.year)

    book = Book(
        title=metadata.title,
        author=metadata.author,
        category=metadata.category,
        year=metadata.year,
        accession_id=accession_id,
        call_number=call_number.strip(),
        total_copies=metadata.total_copies,
        available_copies=metadata.total_copies,
    )
    session.add(book)
    session.flush()
    logger.info("Catalogued '%s' as %s (%s)", book.title, accession_id, book.call_number)
    return book
