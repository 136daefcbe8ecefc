"""Catalog & inventory store: creating, editing and reading books."""

import logging

from sqlalchemy.exc import SQLAlchemyError

from errors import (InvalidStateError, NotFoundError,
                    UnsupportedOperationError, ValidationError)
from models import (DIGITAL_LOCATION, PHYSICAL_LOCATIONS, Book, DigitalBook,
                    FulfillmentMode, PhysicalBook, db)
from utils import (DEFAULT_RENEWAL_PERIOD_DAYS, optional_text, require_int,
                   require_text)

logger = logging.getLogger(__name__)


def get_book(book_id, lock=False):
    query = db.select(Book).filter_by(book_id=book_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    book = db.session.execute(query).scalar_one_or_none()
    if book is None:
        logger.debug(f"Book not found: book_id={book_id}")
        raise NotFoundError('Book not found', book_id=book_id)
    return book


def list_books(search=None, genre=None, location=None, fulfillment_mode=None):
    query = db.select(Book)
    if search:
        query = query.where(Book.title.icontains(search, autoescape=True)
                            | Book.author.icontains(search, autoescape=True))
    if genre:
        query = query.where(Book.genre == genre)
    if location:
        query = query.where(Book.location == location)
    if fulfillment_mode:
        query = query.where(Book.fulfillment_mode == fulfillment_mode)
    books = db.session.execute(
        query.order_by(Book.created_at.desc(), Book.book_id.desc())
    ).scalars().all()
    logger.debug(f"Fetched {len(books)} books")
    return books


def _check_isbn(isbn, book_id=None):
    if not isbn:
        return
    query = db.select(Book.book_id).where(Book.isbn == isbn)
    if book_id is not None:
        query = query.where(Book.book_id != book_id)
    if db.session.execute(query).first():
        logger.debug(f"Duplicate ISBN: {isbn}")
        raise ValidationError('A book with this ISBN already exists', field='isbn')


def _physical_location(value):
    location = optional_text(value) or PHYSICAL_LOCATIONS[0]
    if location not in PHYSICAL_LOCATIONS:
        raise ValidationError(
            f"Location must be one of: {', '.join(PHYSICAL_LOCATIONS)}", field='location')
    return location


def _commit(action, book):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error during {action} for book_id={book.book_id}: {str(e)}")
        db.session.rollback()
        raise


def create_book(data):
    """Add a book to the catalog.

    Physical books start with every copy on the shelf. Digital books have no
    copy counters and carry an access link plus a renewal period instead.
    """
    data = data or {}
    title = require_text(data, 'title')
    author = require_text(data, 'author')
    genre = require_text(data, 'genre')
    if data.get('publication_year') in (None, ''):
        raise ValidationError('publication_year is required', field='publication_year')
    publication_year = require_int(data['publication_year'], 'publication_year')

    mode = data.get('fulfillment_mode') or FulfillmentMode.PHYSICAL
    if mode not in FulfillmentMode.ALL:
        raise ValidationError(
            'fulfillment_mode must be physical or digital', field='fulfillment_mode')

    isbn = optional_text(data.get('isbn'))
    _check_isbn(isbn)

    common = dict(
        title=title,
        author=author,
        genre=genre,
        publication_year=publication_year,
        isbn=isbn,
        description=data.get('description'),
    )
    if mode == FulfillmentMode.DIGITAL:
        access_link = optional_text(data.get('access_link'))
        if not access_link:
            raise ValidationError('An access link is required for digital books', field='access_link')
        renewal = data.get('renewal_period_days')
        renewal_period_days = (
            DEFAULT_RENEWAL_PERIOD_DAYS if renewal in (None, '')
            else require_int(renewal, 'renewal_period_days', minimum=1)
        )
        book = DigitalBook(
            access_link=access_link,
            renewal_period_days=renewal_period_days,
            location=DIGITAL_LOCATION,
            **common
        )
    else:
        copies = data.get('total_copies')
        total_copies = 1 if copies in (None, '') else require_int(copies, 'total_copies', minimum=1)
        book = PhysicalBook(
            total_copies=total_copies,
            available_copies=total_copies,
            location=_physical_location(data.get('location')),
            **common
        )

    db.session.add(book)
    _commit('create', book)
    logger.info(f"Book added: {book.title} (book_id={book.book_id}, mode={mode})")
    return book


def update_book(book_id, patch):
    patch = patch or {}
    book = get_book(book_id, lock=True)
    try:
        mode = patch.get('fulfillment_mode')
        if mode and mode != book.fulfillment_mode:
            raise UnsupportedOperationError(
                'Fulfillment mode cannot be changed once a book is created')

        for field in ('title', 'author', 'genre'):
            if field in patch:
                setattr(book, field, require_text(patch, field))
        if 'publication_year' in patch:
            book.publication_year = require_int(patch['publication_year'], 'publication_year')
        if 'description' in patch:
            book.description = patch['description']
        if 'isbn' in patch:
            isbn = optional_text(patch['isbn'])
            _check_isbn(isbn, book_id=book.book_id)
            book.isbn = isbn

        if book.is_digital:
            if 'access_link' in patch:
                access_link = optional_text(patch['access_link'])
                if not access_link:
                    raise ValidationError(
                        'An access link is required for digital books', field='access_link')
                book.access_link = access_link
            if 'renewal_period_days' in patch:
                book.renewal_period_days = require_int(
                    patch['renewal_period_days'], 'renewal_period_days', minimum=1)
        else:
            if 'location' in patch:
                book.location = _physical_location(patch['location'])
            if 'total_copies' in patch:
                _resize_stock(book, require_int(patch['total_copies'], 'total_copies', minimum=1))
    except (ValidationError, UnsupportedOperationError):
        db.session.rollback()
        raise

    _commit('update', book)
    logger.debug(f"Book updated: book_id={book.book_id}")
    return book


def _resize_stock(book, new_total):
    issued = len(book.open_copies())
    if new_total < issued:
        logger.debug(f"Cannot reduce total copies below issued copies: {issued}")
        raise ValidationError(
            'Total copies cannot be less than the number of issued copies',
            field='total_copies', issued=issued)
    delta = new_total - (book.total_copies or 0)
    book.total_copies = new_total
    book.available_copies = min(new_total, max(0, (book.available_copies or 0) + delta))


def delete_book(book_id):
    book = get_book(book_id, lock=True)
    open_count = len(book.open_copies())
    if open_count:
        db.session.rollback()
        raise InvalidStateError(
            'Cannot delete a book while copies are checked out or awaiting return',
            book_id=book_id, issued=open_count)
    db.session.delete(book)
    _commit('delete', book)
    logger.info(f"Book deleted: book_id={book_id}")


def get_availability(book_id):
    book = get_book(book_id)
    return {
        'book_id': book.book_id,
        'title': book.title,
        'fulfillment_mode': book.fulfillment_mode,
        'total_copies': book.total_copies,
        'available_copies': book.available_copies,
        'issued_copies': [copy.to_dict() for copy in book.open_copies()],
        'status': book.status(),
    }
