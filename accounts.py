"""User administration: listing accounts and changing role or access."""

import logging

from sqlalchemy.exc import SQLAlchemyError

from errors import InvalidStateError, NotFoundError
from models import User, db

logger = logging.getLogger(__name__)

STUDENT_ROLE = 'student'
ADMIN_ROLE = 'admin'
SUPERADMIN_ROLE = 'superadmin'


def get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        logger.debug(f"User not found: user_id={user_id}")
        raise NotFoundError('User not found', user_id=user_id)
    return user


def list_users(role=None):
    query = db.select(User)
    if role:
        query = query.where(User.role == role)
    users = db.session.execute(
        query.order_by(User.created_at.desc(), User.user_id.desc())
    ).scalars().all()
    logger.debug(f"Fetched {len(users)} users")
    return [user.to_dict() for user in users]


def list_admins():
    return list_users(role=ADMIN_ROLE)


def user_stats():
    counts = dict(db.session.execute(
        db.select(User.role, db.func.count(User.user_id)).group_by(User.role)
    ).all())
    total = sum(counts.values())
    admins = counts.get(ADMIN_ROLE, 0)
    superadmins = counts.get(SUPERADMIN_ROLE, 0)
    inactive = db.session.execute(
        db.select(db.func.count(User.user_id)).where(User.is_active.is_(False))
    ).scalar_one()
    return {
        'total_users': total,
        'admin_users': admins,
        'super_admins': superadmins,
        'regular_users': total - admins - superadmins,
        'inactive_users': inactive,
    }


def _change(user_id, action, **values):
    user = get_user(user_id)
    # Superadmin accounts are managed outside the service.
    if user.role == SUPERADMIN_ROLE:
        raise InvalidStateError(
            'Superadmin accounts cannot be changed here', user_id=user_id)
    for key, value in values.items():
        setattr(user, key, value)
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error during {action} for user_id={user_id}: {str(e)}")
        db.session.rollback()
        raise
    logger.info(f"User {action}: user_id={user_id} role={user.role} active={user.is_active}")
    return user.to_dict()


def promote_user(user_id):
    return _change(user_id, 'promoted', role=ADMIN_ROLE)


def demote_user(user_id):
    return _change(user_id, 'demoted', role=STUDENT_ROLE)


def deactivate_user(user_id):
    return _change(user_id, 'deactivated', is_active=False)


def reactivate_user(user_id):
    return _change(user_id, 'reactivated', is_active=True)
