import os
import tempfile

# app.py reads its configuration at import time.
_db_dir = tempfile.mkdtemp(prefix='library-tests-')
os.environ['DATABASE_URL'] = 'sqlite:///' + os.path.join(_db_dir, 'library.db')
os.environ['SESSION_COOKIE_SECURE'] = 'false'
os.environ['LOG_LEVEL'] = 'INFO'

import bcrypt  # noqa: E402
import pytest  # noqa: E402

import catalog  # noqa: E402
from app import app as flask_app  # noqa: E402
from models import User, db  # noqa: E402

PASSWORD = 'secret123'
_PASSWORD_HASH = bcrypt.hashpw(PASSWORD.encode('utf-8'), bcrypt.gensalt(rounds=4)).decode('utf-8')


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make(name, role='student', is_active=True):
        user = User(
            name=name,
            email=f'{name.lower()}@example.com',
            password=_PASSWORD_HASH,
            role=role,
            is_active=is_active,
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def staff(make_user):
    return make_user('Librarian', role='admin')


@pytest.fixture
def make_physical(app):
    def _make(total_copies=2, **extra):
        data = {
            'title': 'Clean Code',
            'author': 'Robert C. Martin',
            'genre': 'Software',
            'publication_year': 2008,
            'total_copies': total_copies,
        }
        data.update(extra)
        return catalog.create_book(data)
    return _make


@pytest.fixture
def make_digital(app):
    def _make(renewal_period_days=15, **extra):
        data = {
            'title': 'Think Python',
            'author': 'Allen B. Downey',
            'genre': 'Programming',
            'publication_year': 2015,
            'fulfillment_mode': 'digital',
            'access_link': 'https://example.org/think-python.pdf',
            'renewal_period_days': renewal_period_days,
        }
        data.update(extra)
        return catalog.create_book(data)
    return _make


@pytest.fixture
def login(client):
    def _login(user):
        client.post('/api/logout')
        response = client.post('/api/login', json={'email': user.email, 'password': PASSWORD})
        assert response.status_code == 200, response.get_json()
        return response
    return _login
