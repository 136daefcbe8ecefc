from flask import Flask, request, jsonify, session, g
import os
from flask_session import Session
import bcrypt
from flask_cors import CORS
import logging
import functools
from sqlalchemy.exc import OperationalError
from sqlalchemy.sql import text
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv
import time

import accounts
import catalog
import circulation
from errors import LibraryError, ValidationError
from models import db, User, STAFF_ROLES

load_dotenv()
app = Flask(__name__)
cors_origins = [o.strip() for o in os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(',') if o.strip()]
CORS(app, supports_credentials=True, origins=cors_origins)

# Configure logging
logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'DEBUG').upper(),
                    format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def _env_flag(name, default):
    return os.environ.get(name, str(default)).strip().lower() in ('1', 'true', 'yes', 'on')


# Database configuration
database_url = os.environ.get('DATABASE_URL')
if not database_url:
    raise ValueError("DATABASE_URL is not set in .env file")
if database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)
app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
if database_url.startswith('postgresql'):
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'connect_args': {
            'connect_timeout': 10,
            'sslmode': os.environ.get('DATABASE_SSLMODE', 'require'),
        },
        'pool_size': 5,
        'max_overflow': 10,
        'pool_timeout': 30,
    }
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-only-change-me')
app.config['SESSION_TYPE'] = 'sqlalchemy'
app.config['SESSION_SQLALCHEMY'] = db
app.config['SESSION_PERMANENT'] = False
app.config['SESSION_COOKIE_SECURE'] = _env_flag('SESSION_COOKIE_SECURE', True)
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

try:
    db.init_app(app)
except Exception as e:
    logger.error(f"Failed to initialize database: {str(e)}")
    raise

Session(app)


@app.before_request
def log_request():
    logger.debug(f"Incoming request: {request.method} {request.path} {request.get_json(silent=True)}")


# Authentication decorator
def login_required(role=None):
    allowed = (role,) if isinstance(role, str) else role

    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            if 'user_id' not in session:
                logger.error("Unauthorized access: No user session")
                return jsonify({'error': 'Unauthorized access'}), 401
            user = db.session.get(User, session['user_id'])
            if not user or not user.is_active:
                logger.error("Unauthorized access: Invalid or deactivated user")
                return jsonify({'error': 'Unauthorized access'}), 401
            if allowed and user.role not in allowed:
                logger.error(f"Access denied: Required role {allowed}, got {user.role}")
                return jsonify({'error': 'Staff access required'}), 403
            g.user = user
            return f(*args, **kwargs)
        return wrapped
    return decorator


staff_required = login_required(role=STAFF_ROLES)


# Retry decorator
def retry_db_operation(max_attempts=3, delay=1):
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempts = 0
            while attempts < max_attempts:
                try:
                    return func(*args, **kwargs)
                except OperationalError as e:
                    logger.error(f"Database operation failed: {str(e)}")
                    db.session.rollback()
                    attempts += 1
                    if attempts == max_attempts:
                        raise
                    time.sleep(delay)
                    logger.debug(f"Retrying database operation ({attempts}/{max_attempts})")
            return None
        return wrapper
    return decorator


def _json_body(*required):
    data = request.get_json(silent=True) or {}
    missing = [key for key in required if data.get(key) in (None, '')]
    if missing:
        logger.error(f"Missing fields: {missing}")
        raise ValidationError(f"Missing {', '.join(missing)}")
    return data


def _int_field(data, key):
    try:
        return int(data[key])
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be an integer', field=key)


# Routes
@app.route('/')
def home():
    return jsonify({"message": "Campus Library Circulation Service"})


@app.route('/api/test-db', methods=['GET'])
@retry_db_operation()
def test_db():
    try:
        result = db.session.execute(text('SELECT CURRENT_TIMESTAMP')).fetchone()
        logger.debug(f"Database test query successful: {result}")
        return jsonify({'message': 'Database connection successful', 'time': str(result[0])}), 200
    except OperationalError as e:
        logger.error(f"Database test error: {str(e)}")
        return jsonify({'error': 'Database connection failed', 'details': str(e)}), 500


@app.route('/api/register', methods=['POST'])
@retry_db_operation()
def register():
    data = request.get_json(silent=True) or {}
    if not all(data.get(key) for key in ['name', 'email', 'password']):
        return jsonify({'error': 'Missing required fields'}), 400
    email = data['email'].strip().lower()
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'Email already exists'}), 400
    hashed_password = bcrypt.hashpw(data['password'].encode('utf-8'), bcrypt.gensalt())
    # Accounts always start as students; staff roles are granted out of band.
    new_user = User(
        name=data['name'].strip(),
        email=email,
        password=hashed_password.decode('utf-8'),
        role='student'
    )
    db.session.add(new_user)
    db.session.commit()
    logger.debug(f"User registered: {email}")
    return jsonify({'message': 'User registered successfully', 'user_id': new_user.user_id}), 201


@app.route('/api/login', methods=['POST'])
@retry_db_operation()
def login():
    data = request.get_json(silent=True)
    if not data or 'email' not in data or 'password' not in data:
        logger.error("Invalid login payload")
        return jsonify({'error': 'Missing email or password'}), 400
    user = User.query.filter(User.email.ilike(data['email'].strip())).first()
    if not user or not user.is_active:
        logger.debug(f"No active user found for email: {data['email']}")
        return jsonify({'error': 'Invalid credentials'}), 401
    if not bcrypt.checkpw(data['password'].encode('utf-8'), user.password.encode('utf-8')):
        logger.debug(f"Password mismatch for user: {data['email']}")
        return jsonify({'error': 'Invalid credentials'}), 401
    session['user_id'] = user.user_id
    logger.debug(f"Session created for user: {user.email}, session['user_id']={session['user_id']}")
    return jsonify({'message': 'Login successful', 'role': user.role, 'name': user.name}), 200


@app.route('/api/logout', methods=['POST'])
def logout():
    session.pop('user_id', None)
    logger.debug("User logged out")
    return jsonify({'message': 'Logout successful'}), 200


@app.route('/api/books', methods=['GET'])
@retry_db_operation()
def get_books():
    books = catalog.list_books(
        search=request.args.get('search', ''),
        genre=request.args.get('genre'),
        location=request.args.get('location'),
        fulfillment_mode=request.args.get('mode'),
    )
    return jsonify([b.to_dict() for b in books]), 200


@app.route('/api/books/<int:book_id>', methods=['GET'])
@retry_db_operation()
def get_book(book_id):
    return jsonify(catalog.get_book(book_id).to_dict()), 200


@app.route('/api/books/<int:book_id>/availability', methods=['GET'])
@retry_db_operation()
def get_availability(book_id):
    return jsonify(catalog.get_availability(book_id)), 200


@app.route('/api/books', methods=['POST'])
@staff_required
@retry_db_operation()
def add_book():
    data = request.get_json(silent=True) or {}
    logger.debug(f"Add book data: {data}")
    book = catalog.create_book(data)
    return jsonify({'message': 'Book created successfully',
                    'book': book.to_dict(include_access_link=True)}), 201


@app.route('/api/books/<int:book_id>', methods=['PUT'])
@staff_required
@retry_db_operation()
def edit_book(book_id):
    data = request.get_json(silent=True) or {}
    logger.debug(f"Edit book data: {data} for book_id={book_id}")
    book = catalog.update_book(book_id, data)
    return jsonify({'message': 'Book updated successfully',
                    'book': book.to_dict(include_access_link=True)}), 200


@app.route('/api/books/<int:book_id>', methods=['DELETE'])
@staff_required
@retry_db_operation()
def delete_book(book_id):
    catalog.delete_book(book_id)
    return jsonify({'message': 'Book deleted successfully'}), 200


@app.route('/api/books/borrow', methods=['POST'])
@login_required()
@retry_db_operation()
def borrow_book():
    data = _json_body('book_id')
    result = circulation.borrow(_int_field(data, 'book_id'), g.user.user_id)
    return jsonify(result), 201


@app.route('/api/books/renew', methods=['POST'])
@login_required()
@retry_db_operation()
def renew_book():
    data = _json_body('book_id')
    result = circulation.renew(_int_field(data, 'book_id'), g.user.user_id)
    return jsonify(result), 200


@app.route('/api/books/return', methods=['POST'])
@login_required()
@retry_db_operation()
def return_book():
    data = _json_body('book_id')
    borrower_id = _int_field(data, 'borrower_id') if data.get('borrower_id') else g.user.user_id
    complete = data.get('complete', False)
    if not isinstance(complete, bool):
        raise ValidationError('complete must be a boolean', field='complete')
    result = circulation.request_or_complete_return(
        _int_field(data, 'book_id'),
        borrower_id,
        actor_id=g.user.user_id,
        complete=complete,
    )
    return jsonify(result), 200


@app.route('/api/me/borrowed', methods=['GET'])
@login_required()
@retry_db_operation()
def my_borrowed_books():
    return jsonify(circulation.borrow_history(g.user.user_id)), 200


@app.route('/api/admin/returns/pending', methods=['GET'])
@staff_required
@retry_db_operation()
def pending_returns():
    pending = circulation.list_pending_returns()
    return jsonify({'total': len(pending), 'pending': pending}), 200


@app.route('/api/admin/returns/<int:copy_id>/verify', methods=['PUT'])
@staff_required
@retry_db_operation()
def verify_return(copy_id):
    return jsonify(circulation.verify_return(copy_id, g.user.user_id)), 200


@app.route('/api/admin/returns/verify', methods=['POST'])
@staff_required
@retry_db_operation()
def verify_return_for_borrower():
    data = _json_body('book_id', 'borrower_id')
    reference = (_int_field(data, 'book_id'), _int_field(data, 'borrower_id'))
    return jsonify(circulation.verify_return(reference, g.user.user_id)), 200


@app.route('/api/admin/books/stats', methods=['GET'])
@staff_required
@retry_db_operation()
def book_stats():
    return jsonify(circulation.circulation_stats()), 200


@app.route('/api/admin/users/<int:user_id>/borrow-history', methods=['GET'])
@staff_required
@retry_db_operation()
def user_borrow_history(user_id):
    return jsonify(circulation.borrow_history(user_id)), 200


@app.route('/api/admin/users', methods=['GET'])
@staff_required
@retry_db_operation()
def list_users():
    return jsonify(accounts.list_users()), 200


@app.route('/api/admin/users/stats', methods=['GET'])
@staff_required
@retry_db_operation()
def user_stats():
    return jsonify(accounts.user_stats()), 200


@app.route('/api/admin/admins', methods=['GET'])
@staff_required
@retry_db_operation()
def list_admins():
    return jsonify(accounts.list_admins()), 200


@app.route('/api/admin/users/<int:user_id>/promote', methods=['PUT'])
@login_required(role='superadmin')
@retry_db_operation()
def promote_user(user_id):
    return jsonify({'message': 'User promoted to admin', 'user': accounts.promote_user(user_id)}), 200


@app.route('/api/admin/users/<int:user_id>/demote', methods=['PUT'])
@login_required(role='superadmin')
@retry_db_operation()
def demote_user(user_id):
    return jsonify({'message': 'Admin demoted to student', 'user': accounts.demote_user(user_id)}), 200


@app.route('/api/admin/users/<int:user_id>/deactivate', methods=['PUT'])
@login_required(role='superadmin')
@retry_db_operation()
def deactivate_user(user_id):
    return jsonify({'message': 'User deactivated', 'user': accounts.deactivate_user(user_id)}), 200


@app.route('/api/admin/users/<int:user_id>/reactivate', methods=['PUT'])
@login_required(role='superadmin')
@retry_db_operation()
def reactivate_user(user_id):
    return jsonify({'message': 'User reactivated', 'user': accounts.reactivate_user(user_id)}), 200


@app.errorhandler(LibraryError)
def handle_library_error(error):
    logger.debug(f"Request rejected: {error.code} {error.message}")
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(Exception)
def handle_error(error):
    if isinstance(error, HTTPException):
        return error
    logger.error(f"Unhandled error: {str(error)}")
    db.session.rollback()
    return jsonify({'error': 'An unexpected error occurred'}), 500


if __name__ == '__main__':
    with app.app_context():
        db.create_all()
        logger.debug(f"Database connected: {app.config['SQLALCHEMY_DATABASE_URI']}")
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=True)
