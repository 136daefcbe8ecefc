from flask_sqlalchemy import SQLAlchemy

from utils import DEFAULT_RENEWAL_PERIOD_DAYS, PHYSICAL_LOAN_DAYS, isoformat, utcnow

db = SQLAlchemy()

STAFF_ROLES = ('admin', 'superadmin')
PHYSICAL_LOCATIONS = ('Main library', 'Sub library')
DIGITAL_LOCATION = 'Digital Library'


class FulfillmentMode:
    PHYSICAL = 'physical'
    DIGITAL = 'digital'

    ALL = (PHYSICAL, DIGITAL)


class CopyState:
    ACTIVE = 'active'
    PENDING_RETURN = 'pending_return'
    RETURNED = 'returned'

    # States in which a copy is still off the shelf.
    OPEN = (ACTIVE, PENDING_RETURN)


class User(db.Model):
    __tablename__ = 'user'
    user_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='student')
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    borrowed_books = db.relationship(
        'BorrowLedgerEntry', back_populates='user',
        order_by='BorrowLedgerEntry.entry_id',
    )

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES

    def open_entry_for(self, book_id):
        for entry in self.borrowed_books:
            if entry.book_id == book_id and entry.state in CopyState.OPEN:
                return entry
        return None

    def to_dict(self):
        entries = self.borrowed_books
        return {
            'user_id': self.user_id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'is_active': self.is_active,
            'created_at': isoformat(self.created_at),
            'total_borrowed': len(entries),
            'active_borrowed': len([e for e in entries if e.state in CopyState.OPEN]),
            'pending_returns': len([e for e in entries if e.state == CopyState.PENDING_RETURN]),
        }


class Book(db.Model):
    __tablename__ = 'book'
    # Ids are never reused: ledger entries keep pointing at deleted books and copies.
    __table_args__ = {'sqlite_autoincrement': True}
    book_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    author = db.Column(db.String(100), nullable=False)
    genre = db.Column(db.String(50), nullable=False)
    publication_year = db.Column(db.Integer, nullable=False)
    isbn = db.Column(db.String(20), unique=True)
    description = db.Column(db.Text)
    location = db.Column(db.String(50))
    fulfillment_mode = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    issued_copies = db.relationship(
        'IssuedCopy', back_populates='book',
        order_by='IssuedCopy.copy_id', cascade='all, delete-orphan',
    )

    __mapper_args__ = {'polymorphic_on': fulfillment_mode}

    is_digital = False

    def open_copies(self):
        return [c for c in self.issued_copies if c.state in CopyState.OPEN]

    def status(self):
        raise NotImplementedError

    def to_dict(self, include_access_link=False):
        return {
            'book_id': self.book_id,
            'title': self.title,
            'author': self.author,
            'genre': self.genre,
            'publication_year': self.publication_year,
            'isbn': self.isbn,
            'description': self.description,
            'location': self.location,
            'fulfillment_mode': self.fulfillment_mode,
            'status': self.status(),
            'issued_count': len(self.open_copies()),
            'created_at': isoformat(self.created_at),
        }


class PhysicalBook(Book):
    total_copies = db.Column(db.Integer)
    available_copies = db.Column(db.Integer)

    __mapper_args__ = {'polymorphic_identity': FulfillmentMode.PHYSICAL}

    def loan_period_days(self):
        return PHYSICAL_LOAN_DAYS

    def is_consistent(self):
        """True when the copy counters agree with the open issued copies."""
        if self.total_copies is None or self.available_copies is None:
            return False
        if not 0 <= self.available_copies <= self.total_copies:
            return False
        return self.available_copies + len(self.open_copies()) == self.total_copies

    def status(self):
        return 'Available' if (self.available_copies or 0) > 0 else 'Issued'

    def to_dict(self, include_access_link=False):
        data = super().to_dict()
        data['total_copies'] = self.total_copies
        data['available_copies'] = self.available_copies
        return data


class DigitalBook(Book):
    access_link = db.Column(db.String(500))
    renewal_period_days = db.Column(db.Integer, default=DEFAULT_RENEWAL_PERIOD_DAYS)

    __mapper_args__ = {'polymorphic_identity': FulfillmentMode.DIGITAL}

    is_digital = True
    # Digital access is unlimited; counters read as None everywhere.
    total_copies = None
    available_copies = None

    def loan_period_days(self):
        return self.renewal_period_days or DEFAULT_RENEWAL_PERIOD_DAYS

    def status(self):
        return 'Digital'

    def to_dict(self, include_access_link=False):
        data = super().to_dict()
        data['total_copies'] = None
        data['available_copies'] = None
        data['renewal_period_days'] = self.renewal_period_days
        if include_access_link:
            data['access_link'] = self.access_link
        return data


class IssuedCopy(db.Model):
    __tablename__ = 'issued_copy'
    __table_args__ = {'sqlite_autoincrement': True}
    copy_id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id'), nullable=False, index=True)
    borrower_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False, index=True)
    borrower_name = db.Column(db.String(100))
    issue_date = db.Column(db.DateTime, nullable=False)
    due_date = db.Column(db.DateTime, nullable=False)
    state = db.Column(db.String(20), nullable=False, default=CopyState.ACTIVE, index=True)
    return_requested_at = db.Column(db.DateTime)
    return_verified_at = db.Column(db.DateTime)
    verified_by = db.Column(db.Integer, db.ForeignKey('user.user_id'))
    renewal_history = db.Column(db.JSON, nullable=False, default=list)
    book = db.relationship('Book', back_populates='issued_copies')
    borrower = db.relationship('User', foreign_keys=[borrower_id])

    def to_dict(self):
        return {
            'copy_id': self.copy_id,
            'book_id': self.book_id,
            'borrower_id': self.borrower_id,
            'borrower_name': self.borrower_name,
            'issue_date': isoformat(self.issue_date),
            'due_date': isoformat(self.due_date),
            'state': self.state,
            'return_requested_at': isoformat(self.return_requested_at),
            'return_verified_at': isoformat(self.return_verified_at),
            'verified_by': self.verified_by,
            'renewal_history': list(self.renewal_history or []),
        }


class BorrowLedgerEntry(db.Model):
    """A borrow event as seen from the borrower's profile.

    ``entry_id`` is the id of the paired IssuedCopy. The pairing is kept by
    id rather than a foreign key so a user's history survives the book
    being removed from the catalog.
    """
    __tablename__ = 'borrow_ledger_entry'
    entry_id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False, index=True)
    book_id = db.Column(db.Integer, nullable=False, index=True)
    book_title = db.Column(db.String(200))
    fulfillment_mode = db.Column(db.String(20), nullable=False)
    access_link = db.Column(db.String(500))
    borrow_date = db.Column(db.DateTime, nullable=False)
    due_date = db.Column(db.DateTime, nullable=False)
    state = db.Column(db.String(20), nullable=False, default=CopyState.ACTIVE)
    return_requested_at = db.Column(db.DateTime)
    return_verified_at = db.Column(db.DateTime)
    renewal_history = db.Column(db.JSON, nullable=False, default=list)
    user = db.relationship('User', back_populates='borrowed_books')

    def to_dict(self):
        return {
            'entry_id': self.entry_id,
            'book_id': self.book_id,
            'book_title': self.book_title,
            'fulfillment_mode': self.fulfillment_mode,
            'access_link': self.access_link,
            'borrow_date': isoformat(self.borrow_date),
            'due_date': isoformat(self.due_date),
            'state': self.state,
            'return_requested_at': isoformat(self.return_requested_at),
            'return_verified_at': isoformat(self.return_verified_at),
            'renewal_history': list(self.renewal_history or []),
        }
