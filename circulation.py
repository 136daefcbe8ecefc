"""Circulation state machine: borrow, renew, return and return verification.

Every issued copy lives in its book's ``issued_copies`` and is mirrored by a
ledger entry in the borrower's ``borrowed_books`` with the same id. The two
records move together::

    active --request return (physical)--> pending_return --staff verifies--> returned
    active --return (digital)------------------------------------------------> returned
    active --renew (digital)--> active

Each public function runs inside ``circulation_event``: the book row, the
issued copy and the ledger entry are changed in one database transaction
and committed once, or rolled back together.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from catalog import get_book
from errors import (AlreadyBorrowedError, AlreadyPendingError,
                    ForbiddenError, InvalidStateError, LibraryError,
                    NotFoundError, UnavailableError,
                    UnsupportedOperationError, ValidationError)
from models import (Book, BorrowLedgerEntry, CopyState, FulfillmentMode, IssuedCopy,
                    PhysicalBook, User, db)
from utils import add_days, isoformat, renewal_due_date, utcnow

logger = logging.getLogger(__name__)


@contextmanager
def circulation_event(action, **context):
    try:
        yield
        db.session.commit()
    except LibraryError as e:
        db.session.rollback()
        logger.debug(f"{action} rejected ({e.code}): {e.message} {context}")
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"{action} failed and was rolled back: {str(e)} {context}")
        raise


def _get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        logger.debug(f"User not found: user_id={user_id}")
        raise NotFoundError('User not found', user_id=user_id)
    return user


def _paired_copy(entry):
    copy = db.session.get(IssuedCopy, entry.entry_id)
    if copy is None:
        raise NotFoundError('No active borrowing record found for this book')
    return copy


def _transition(copy, entry, expected, state, copy_extra=None, entry_extra=None, **fields):
    """Move an issued copy and its ledger entry to ``state`` together.

    The updates only apply while both rows are still in one of ``expected``.
    Returns False when the copy already left those states; a ledger entry
    that disagrees with its copy aborts the whole event.
    """
    copy_values = dict(fields, state=state, **(copy_extra or {}))
    entry_values = dict(fields, state=state, **(entry_extra or {}))

    result = db.session.execute(
        db.update(IssuedCopy)
        .where(IssuedCopy.copy_id == copy.copy_id, IssuedCopy.state.in_(expected))
        .values(**copy_values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    if entry is None:
        raise InvalidStateError('Borrow ledger entry is missing for this copy', copy_id=copy.copy_id)
    result = db.session.execute(
        db.update(BorrowLedgerEntry)
        .where(BorrowLedgerEntry.entry_id == entry.entry_id,
               BorrowLedgerEntry.state.in_(expected))
        .values(**entry_values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.error(f"Ledger entry out of sync with issued copy: copy_id={copy.copy_id}")
        raise InvalidStateError('Borrow ledger entry is out of sync with the issued copy',
                                copy_id=copy.copy_id)

    db.session.expire(copy)
    db.session.expire(entry)
    return True


def _take_copy(book):
    result = db.session.execute(
        db.update(PhysicalBook)
        .where(PhysicalBook.book_id == book.book_id, PhysicalBook.available_copies > 0)
        .values(available_copies=PhysicalBook.available_copies - 1)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(book, ['available_copies'])
    if result.rowcount != 1:
        logger.debug(f"Book unavailable: book_id={book.book_id}")
        raise UnavailableError('Book is not available', book_id=book.book_id)


def _restock(book):
    result = db.session.execute(
        db.update(PhysicalBook)
        .where(PhysicalBook.book_id == book.book_id,
               PhysicalBook.available_copies < PhysicalBook.total_copies)
        .values(available_copies=PhysicalBook.available_copies + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(book, ['available_copies'])
    if result.rowcount != 1:
        logger.warning(f"Available copies already at total, not incremented: book_id={book.book_id}")


def _check_inventory(book):
    if book.is_digital:
        return
    db.session.expire(book, ['issued_copies'])
    if not book.is_consistent():
        logger.warning(
            f"Inventory mismatch for book_id={book.book_id}: total={book.total_copies} "
            f"available={book.available_copies} issued={len(book.open_copies())}")


def borrow(book_id, borrower_id, now=None):
    now = now or utcnow()
    with circulation_event('borrow', book_id=book_id, user_id=borrower_id):
        book = get_book(book_id, lock=True)
        borrower = _get_user(borrower_id)
        if not borrower.is_active:
            raise ForbiddenError('This account has been deactivated')

        existing = borrower.open_entry_for(book.book_id)
        if existing is not None:
            if book.is_digital:
                raise AlreadyBorrowedError(
                    'You already have digital access to this book. Renew it from your profile.')
            if existing.state == CopyState.PENDING_RETURN:
                raise AlreadyBorrowedError(
                    'Return verification is pending. Please wait until the admin confirms the return.')
            raise AlreadyBorrowedError('You have already borrowed this book.')

        if not book.is_digital:
            _take_copy(book)

        period = book.loan_period_days()
        due_date = add_days(now, period)
        copy = IssuedCopy(
            book=book,
            borrower_id=borrower.user_id,
            borrower_name=borrower.name,
            issue_date=now,
            due_date=due_date,
            state=CopyState.ACTIVE,
            renewal_history=[],
        )
        db.session.add(copy)
        db.session.flush()

        entry = BorrowLedgerEntry(
            entry_id=copy.copy_id,
            user=borrower,
            book_id=book.book_id,
            book_title=book.title,
            fulfillment_mode=book.fulfillment_mode,
            access_link=book.access_link if book.is_digital else None,
            borrow_date=now,
            due_date=due_date,
            state=CopyState.ACTIVE,
            renewal_history=[],
        )
        db.session.add(entry)
        db.session.flush()
        _check_inventory(book)

        if book.is_digital:
            message = f"Digital access granted. Remember to renew every {period} days."
        else:
            message = f"Book borrowed successfully. Please return it within {period} days."
        result = {
            'message': message,
            'copy_id': copy.copy_id,
            'state': CopyState.ACTIVE,
            'due_date': isoformat(due_date),
            'access_link': book.access_link if book.is_digital else None,
        }
    logger.info(f"Book borrowed: book_id={book_id} copy_id={result['copy_id']} by user_id={borrower_id}")
    return result


def renew(book_id, borrower_id, now=None):
    now = now or utcnow()
    with circulation_event('renew', book_id=book_id, user_id=borrower_id):
        book = get_book(book_id, lock=True)
        if not book.is_digital:
            raise UnsupportedOperationError('Renewal is available only for digital books')
        borrower = _get_user(borrower_id)
        entry = borrower.open_entry_for(book.book_id)
        if entry is None or entry.state != CopyState.ACTIVE:
            raise NotFoundError('No active digital access found to renew')
        copy = _paired_copy(entry)

        new_due_date = renewal_due_date(now, copy.due_date, book.loan_period_days())
        record = {'renewed_at': isoformat(now), 'new_due_date': isoformat(new_due_date)}
        renewed = _transition(
            copy, entry, (CopyState.ACTIVE,), CopyState.ACTIVE,
            copy_extra={'renewal_history': list(copy.renewal_history or []) + [record]},
            entry_extra={'renewal_history': list(entry.renewal_history or []) + [record]},
            due_date=new_due_date,
        )
        if not renewed:
            raise NotFoundError('No active digital access found to renew')
        result = {
            'message': 'Digital access renewed successfully.',
            'copy_id': copy.copy_id,
            'due_date': isoformat(new_due_date),
        }
    logger.debug(f"Digital access renewed: book_id={book_id} user_id={borrower_id} until {result['due_date']}")
    return result


def _complete_physical_return(book, copy, entry, expected, verifier, now):
    done = _transition(
        copy, entry, expected, CopyState.RETURNED,
        copy_extra={'verified_by': verifier.user_id},
        return_verified_at=now,
    )
    if not done:
        raise InvalidStateError('No pending return found for the provided record',
                                copy_id=copy.copy_id)
    _restock(book)
    _check_inventory(book)


def request_or_complete_return(book_id, borrower_id, actor_id=None, complete=False, now=None):
    """Return a borrowed book.

    Digital access ends immediately. For a physical book the borrower only
    files a request; the copy stays off the shelf until staff verify it.
    Staff may pass ``complete=True`` to take the copy back in one step.
    """
    now = now or utcnow()
    actor_id = borrower_id if actor_id is None else actor_id
    with circulation_event('return', book_id=book_id, user_id=borrower_id, actor_id=actor_id):
        book = get_book(book_id, lock=True)
        borrower = _get_user(borrower_id)
        actor = borrower if actor_id == borrower_id else _get_user(actor_id)
        if actor is not borrower and not actor.is_staff:
            raise ForbiddenError('Only staff can return a book on behalf of another user')

        entry = borrower.open_entry_for(book.book_id)
        if entry is None:
            raise NotFoundError('No active borrowing record found for this book')
        copy = _paired_copy(entry)

        if book.is_digital:
            done = _transition(
                copy, entry, (CopyState.ACTIVE,), CopyState.RETURNED,
                entry_extra={'access_link': None},
                return_verified_at=now,
            )
            if not done:
                raise InvalidStateError('Digital access is no longer active', copy_id=copy.copy_id)
            message = 'Digital access has been revoked successfully.'
            state = CopyState.RETURNED
        elif complete:
            if not actor.is_staff:
                raise ForbiddenError('Only staff can verify the return of a physical book')
            _complete_physical_return(book, copy, entry, CopyState.OPEN, actor, now)
            message = 'Book return verified successfully.'
            state = CopyState.RETURNED
        else:
            pending_message = 'Return request already submitted. Awaiting admin verification.'
            if entry.state == CopyState.PENDING_RETURN:
                raise AlreadyPendingError(pending_message, copy_id=copy.copy_id)
            requested = _transition(
                copy, entry, (CopyState.ACTIVE,), CopyState.PENDING_RETURN,
                return_requested_at=now,
            )
            if not requested:
                raise AlreadyPendingError(pending_message, copy_id=copy.copy_id)
            message = 'Return request submitted. An admin will verify the physical return shortly.'
            state = CopyState.PENDING_RETURN
        result = {'message': message, 'copy_id': copy.copy_id, 'state': state}
    logger.info(f"Return processed: book_id={book_id} user_id={borrower_id} state={state}")
    return result


def _resolve_copy(copy_reference):
    if isinstance(copy_reference, (tuple, list)):
        book_id, borrower_id = copy_reference
        base = db.select(IssuedCopy).where(IssuedCopy.book_id == book_id,
                                           IssuedCopy.borrower_id == borrower_id)
        pending = db.session.execute(
            base.where(IssuedCopy.state == CopyState.PENDING_RETURN)
        ).scalars().all()
        if len(pending) > 1:
            raise ValidationError('More than one pending return matches; use the copy id instead',
                                  book_id=book_id, borrower_id=borrower_id)
        if pending:
            return pending[0]
        copy = db.session.execute(
            base.order_by(IssuedCopy.copy_id.desc()).limit(1)
        ).scalar_one_or_none()
    else:
        copy = db.session.get(IssuedCopy, copy_reference)
    if copy is None:
        raise NotFoundError('Borrow record not found')
    return copy


def verify_return(copy_reference, verifier_id, now=None):
    """Confirm a pending physical return and put the copy back on the shelf.

    ``copy_reference`` is an issued copy id or a ``(book_id, borrower_id)``
    pair.
    """
    now = now or utcnow()
    with circulation_event('verify_return', copy=copy_reference, verifier_id=verifier_id):
        verifier = _get_user(verifier_id)
        if not verifier.is_staff:
            raise ForbiddenError('Staff access required to verify returns')
        copy = _resolve_copy(copy_reference)
        book = get_book(copy.book_id, lock=True)
        if copy.state != CopyState.PENDING_RETURN:
            raise InvalidStateError('No pending return found for the provided record',
                                    copy_id=copy.copy_id, state=copy.state)
        entry = db.session.get(BorrowLedgerEntry, copy.copy_id)
        _complete_physical_return(book, copy, entry, (CopyState.PENDING_RETURN,), verifier, now)
        result = {'message': 'Book return verified successfully.', 'copy_id': copy.copy_id,
                  'state': CopyState.RETURNED}
    logger.info(f"Return verified: copy_id={result['copy_id']} by user_id={verifier_id}")
    return result


def list_pending_returns():
    copies = db.session.execute(
        db.select(IssuedCopy)
        .where(IssuedCopy.state == CopyState.PENDING_RETURN)
        .order_by(IssuedCopy.return_requested_at, IssuedCopy.copy_id)
    ).scalars().all()
    pending = []
    for copy in copies:
        borrower = copy.borrower
        pending.append({
            'copy': copy.to_dict(),
            'book': {
                'book_id': copy.book.book_id,
                'title': copy.book.title,
                'location': copy.book.location,
                'fulfillment_mode': copy.book.fulfillment_mode,
            },
            'borrower': {
                'user_id': copy.borrower_id,
                'name': copy.borrower_name or (borrower.name if borrower else None),
                'email': borrower.email if borrower else None,
            },
        })
    logger.debug(f"Fetched {len(pending)} pending returns")
    return pending


def borrow_history(user_id):
    user = _get_user(user_id)
    return [entry.to_dict() for entry in sorted(
        user.borrowed_books, key=lambda e: e.entry_id, reverse=True)]


def circulation_stats(now=None):
    now = now or utcnow()
    books = db.session.execute(db.select(Book)).scalars().all()
    physical = [b for b in books if not b.is_digital]
    total_copies = sum(b.total_copies or 0 for b in physical)
    available_copies = sum(b.available_copies or 0 for b in physical)

    stats = {'open': 0, 'returned': 0, 'overdue': 0, 'pending_returns': 0,
             'active_digital_access': 0}
    rows = db.session.execute(
        db.select(IssuedCopy.state, IssuedCopy.due_date, Book.fulfillment_mode)
        .join(Book, IssuedCopy.book_id == Book.book_id)
    ).all()
    for state, due_date, mode in rows:
        if state == CopyState.RETURNED:
            stats['returned'] += 1
            continue
        stats['open'] += 1
        if state == CopyState.PENDING_RETURN:
            stats['pending_returns'] += 1
        if mode == FulfillmentMode.DIGITAL:
            stats['active_digital_access'] += 1
        if due_date and due_date < now:
            stats['overdue'] += 1

    return {
        'total_books': len(books),
        'physical_books': len(physical),
        'digital_books': len(books) - len(physical),
        'total_copies': total_copies,
        'available_copies': available_copies,
        'issued_copies': max(0, total_copies - available_copies),
        'issuances': stats,
    }
