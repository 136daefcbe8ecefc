import pytest

import catalog
import circulation
from errors import (InvalidStateError, NotFoundError,
                    UnsupportedOperationError, ValidationError)
from models import BorrowLedgerEntry, DigitalBook, PhysicalBook, db


def test_create_physical_book_starts_fully_stocked(make_physical):
    book = make_physical(total_copies=3)
    assert isinstance(book, PhysicalBook)
    assert book.fulfillment_mode == 'physical'
    assert book.total_copies == 3
    assert book.available_copies == 3
    assert book.location == 'Main library'
    assert book.status() == 'Available'


def test_create_physical_book_defaults_to_one_copy(app):
    book = catalog.create_book({'title': 'SICP', 'author': 'Abelson', 'genre': 'CS',
                                'publication_year': '1985'})
    assert book.total_copies == 1
    assert book.available_copies == 1
    assert book.publication_year == 1985


@pytest.mark.parametrize('patch, field', [
    ({'title': '  '}, 'title'),
    ({'author': None}, 'author'),
    ({'publication_year': 'nineteen'}, 'publication_year'),
    ({'total_copies': 0}, 'total_copies'),
    ({'location': 'Annex'}, 'location'),
    ({'fulfillment_mode': 'audio'}, 'fulfillment_mode'),
])
def test_create_book_rejects_invalid_input(make_physical, patch, field):
    with pytest.raises(ValidationError) as exc:
        make_physical(**patch)
    assert exc.value.details.get('field') == field


def test_create_book_requires_publication_year(app):
    with pytest.raises(ValidationError):
        catalog.create_book({'title': 'A', 'author': 'B', 'genre': 'C'})


def test_create_digital_book_has_unlimited_copies(make_digital):
    book = make_digital()
    assert isinstance(book, DigitalBook)
    assert book.total_copies is None
    assert book.available_copies is None
    assert book.renewal_period_days == 15
    assert book.location == 'Digital Library'
    assert book.status() == 'Digital'
    assert 'access_link' not in book.to_dict()
    assert book.to_dict(include_access_link=True)['access_link'] == 'https://example.org/think-python.pdf'


def test_create_digital_book_defaults_renewal_period(app):
    book = catalog.create_book({
        'title': 'Dive Into Python', 'author': 'Mark Pilgrim', 'genre': 'Programming',
        'publication_year': 2009, 'fulfillment_mode': 'digital',
        'access_link': 'https://example.org/dive.pdf',
    })
    assert book.renewal_period_days == 15


def test_create_digital_book_requires_access_link(make_digital):
    with pytest.raises(ValidationError):
        make_digital(access_link='   ')


def test_create_digital_book_rejects_zero_renewal_period(make_digital):
    with pytest.raises(ValidationError):
        make_digital(renewal_period_days=0)


def test_isbn_must_be_unique_when_present(make_physical):
    make_physical(isbn='9780132350884')
    make_physical(title='No ISBN one')
    make_physical(title='No ISBN two')
    with pytest.raises(ValidationError):
        make_physical(title='Copycat', isbn='9780132350884')


def test_update_rejects_mode_change(make_physical):
    book = make_physical()
    with pytest.raises(UnsupportedOperationError):
        catalog.update_book(book.book_id, {'fulfillment_mode': 'digital'})
    assert db.session.get(PhysicalBook, book.book_id).fulfillment_mode == 'physical'


def test_update_total_copies_moves_available_by_delta(make_physical, make_user):
    book = make_physical(total_copies=3)
    reader = make_user('Ana')
    circulation.borrow(book.book_id, reader.user_id)

    catalog.update_book(book.book_id, {'total_copies': 5})
    assert (book.total_copies, book.available_copies) == (5, 4)

    catalog.update_book(book.book_id, {'total_copies': 1})
    assert (book.total_copies, book.available_copies) == (1, 0)
    assert book.is_consistent()


def test_update_total_copies_cannot_drop_below_open_issuances(make_physical, make_user):
    book = make_physical(total_copies=3)
    for name in ('Ana', 'Ben'):
        circulation.borrow(book.book_id, make_user(name).user_id)

    with pytest.raises(ValidationError):
        catalog.update_book(book.book_id, {'total_copies': 1})
    assert (book.total_copies, book.available_copies) == (3, 1)


def test_update_counts_pending_returns_as_issued(make_physical, make_user):
    book = make_physical(total_copies=2)
    reader = make_user('Ana')
    circulation.borrow(book.book_id, reader.user_id)
    circulation.request_or_complete_return(book.book_id, reader.user_id)

    with pytest.raises(ValidationError):
        catalog.update_book(book.book_id, {'total_copies': 0})
    catalog.update_book(book.book_id, {'total_copies': 1})
    assert book.available_copies == 0


def test_update_digital_fields(make_digital):
    book = make_digital()
    catalog.update_book(book.book_id, {'renewal_period_days': 30, 'title': 'Think Python 2e'})
    assert book.renewal_period_days == 30
    assert book.title == 'Think Python 2e'
    with pytest.raises(ValidationError):
        catalog.update_book(book.book_id, {'access_link': ''})
    assert book.access_link == 'https://example.org/think-python.pdf'


def test_update_missing_book(app):
    with pytest.raises(NotFoundError):
        catalog.update_book(404, {'title': 'x'})


def test_delete_book(make_physical):
    book = make_physical()
    catalog.delete_book(book.book_id)
    with pytest.raises(NotFoundError):
        catalog.get_book(book.book_id)
    with pytest.raises(NotFoundError):
        catalog.delete_book(book.book_id)


def test_delete_blocked_while_copies_are_out(make_physical, make_user, staff):
    book = make_physical()
    reader = make_user('Ana')
    circulation.borrow(book.book_id, reader.user_id)

    with pytest.raises(InvalidStateError):
        catalog.delete_book(book.book_id)

    circulation.request_or_complete_return(book.book_id, reader.user_id)
    with pytest.raises(InvalidStateError):
        catalog.delete_book(book.book_id)

    copy_id = book.issued_copies[0].copy_id
    circulation.verify_return(copy_id, staff.user_id)
    catalog.delete_book(book.book_id)

    entry = db.session.get(BorrowLedgerEntry, copy_id)
    assert entry is not None
    assert entry.state == 'returned'
    assert entry.book_title == 'Clean Code'


def test_list_books_filters(make_physical, make_digital):
    make_physical(title='Clean Code', genre='Software')
    make_physical(title='The Pragmatic Programmer', author='Hunt', genre='Software',
                  location='Sub library')
    make_digital(title='Think Python', genre='Programming')

    titles = lambda books: sorted(b.title for b in books)  # noqa: E731
    assert titles(catalog.list_books(search='clean')) == ['Clean Code']
    assert titles(catalog.list_books(search='HUNT')) == ['The Pragmatic Programmer']
    assert titles(catalog.list_books(genre='Software')) == ['Clean Code', 'The Pragmatic Programmer']
    assert titles(catalog.list_books(location='Sub library')) == ['The Pragmatic Programmer']
    assert titles(catalog.list_books(fulfillment_mode='digital')) == ['Think Python']
    assert len(catalog.list_books()) == 3


def test_availability_reports_open_issuances(make_physical, make_digital, make_user):
    physical = make_physical(total_copies=1)
    digital = make_digital()
    reader = make_user('Ana')
    circulation.borrow(physical.book_id, reader.user_id)
    circulation.borrow(digital.book_id, reader.user_id)

    report = catalog.get_availability(physical.book_id)
    assert report['status'] == 'Issued'
    assert (report['total_copies'], report['available_copies']) == (1, 0)
    assert [c['borrower_id'] for c in report['issued_copies']] == [reader.user_id]

    report = catalog.get_availability(digital.book_id)
    assert report['status'] == 'Digital'
    assert report['total_copies'] is None
    assert report['available_copies'] is None
    assert len(report['issued_copies']) == 1

    with pytest.raises(NotFoundError):
        catalog.get_availability(9999)


def test_deleted_book_ids_are_not_reused(make_digital, make_user):
    reader = make_user('Ana')
    old = make_digital()
    old_id = old.book_id
    first = circulation.borrow(old_id, reader.user_id)
    circulation.request_or_complete_return(old_id, reader.user_id)
    catalog.delete_book(old_id)

    new = make_digital(title='Automate the Boring Stuff')
    assert new.book_id != old_id
    second = circulation.borrow(new.book_id, reader.user_id)
    assert second['copy_id'] > first['copy_id']

    entry = db.session.get(BorrowLedgerEntry, first['copy_id'])
    assert (entry.book_id, entry.book_title, entry.state) == (old_id, 'Think Python', 'returned')
    assert [e.book_title for e in reader.borrowed_books] == ['Think Python', 'Automate the Boring Stuff']


def test_search_treats_wildcards_literally(make_physical):
    make_physical(title='100% Python')
    make_physical(title='Clean Code')
    make_physical(title='snake_case Style', author='Guido')

    titles = lambda books: sorted(b.title for b in books)  # noqa: E731
    assert titles(catalog.list_books(search='%')) == ['100% Python']
    assert titles(catalog.list_books(search='_')) == ['snake_case Style']
    assert titles(catalog.list_books(search='0%')) == ['100% Python']
