import logging

from sqlalchemy import func, select, update

from .errors import Conflict, InvariantViolation, NotFound, OutOfStock
from .models import Book, CirculationTransaction

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Per-book copy counts. Both mutations are single conditional UPDATEs, so
    N concurrent calls net out to some serial order of them.

    Only the transaction state machine decides *when* to call these; nothing
    else touches available_copies for a circulation event.
    """

    def get_book(self, session, book_id):
        book = session.get(Book, book_id)
        if book is None:
            raise NotFound(f"Book {book_id} not found", book_id=book_id)
        return book

    def lock_book(self, session, book_id):
        """SELECT ... FOR UPDATE on the book row; the per-book mutex."""
        book = session.execute(
            select(Book)
            .where(Book.id == book_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if book is None:
            raise NotFound(f"Book {book_id} not found", book_id=book_id)
        return book

    def reserve_copy(self, session, book_id):
        result = session.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_copies > 0)
            .values(available_copies=Book.available_copies - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            book = self.get_book(session, book_id)
            raise OutOfStock(
                f"No copies of '{book.title}' available", book_id=book_id
            )
        self._refresh(session, book_id)
        logger.info("Reserved copy of book %s", book_id)

    def release_copy(self, session, book_id):
        result = session.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_copies < Book.total_copies)
            .values(available_copies=Book.available_copies + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            book = self.get_book(session, book_id)
            raise InvariantViolation(
                f"Release of book {book_id} would exceed total copies "
                f"({book.available_copies}/{book.total_copies})",
                book_id=book_id,
            )
        self._refresh(session, book_id)
        logger.info("Released copy of book %s", book_id)

    def set_total_copies(self, session, book_id, total):
        if total < 0:
            raise ValueError("total_copies cannot be negative")
        book = self.lock_book(session, book_id)
        diff = total - book.total_copies
        if diff == 0:
            return book
        if book.available_copies + diff < 0:
            on_loan = book.total_copies - book.available_copies
            raise Conflict(
                f"{on_loan} copies are out; cannot reduce total to {total}",
                book_id=book_id,
            )
        book.total_copies = total
        book.available_copies = book.available_copies + diff
        session.flush()
        logger.info("Book %s total copies -> %d", book_id, total)
        return book

    def copies_held(self, session, book_id):
        return session.execute(
            select(func.count(CirculationTransaction.id)).where(
                CirculationTransaction.book_id == book_id,
                CirculationTransaction.holds_copy.is_(True),
            )
        ).scalar_one()

    def audit(self, session, book_id):
        """Raise InvariantViolation if the counts disagree with open transactions."""
        book = self.get_book(session, book_id)
        if not 0 <= book.available_copies <= book.total_copies:
            raise InvariantViolation(
                f"Book {book_id} stock out of range "
                f"({book.available_copies}/{book.total_copies})",
                book_id=book_id,
            )
        held = self.copies_held(session, book_id)
        if book.available_copies != book.total_copies - held:
            raise InvariantViolation(
                f"Book {book_id} has {book.available_copies} available but "
                f"{held} of {book.total_copies} copies are held",
                book_id=book_id,
            )
        return book

    def _refresh(self, session, book_id):
        book = session.get(Book, book_id)
        if book is not None:
            session.refresh(book, attribute_names=["available_copies", "total_copies"])
