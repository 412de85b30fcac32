"""Identity helpers: resolve the acting user from the session set by the auth subsystem."""
from functools import wraps

from flask import jsonify, session

from designhub.models import User, db
from designhub.logging_config import get_logger

logger = get_logger(__name__)


def get_current_user():
    """
    Get the current logged-in user from the session.

    Returns:
        User object if logged in, None otherwise
    """
    from flask import has_request_context

    # Background jobs (sweeper, scripts) have no acting user
    if not has_request_context():
        return None

    try:
        user_id = session.get('user_id')
        if not user_id:
            return None

        user = db.session.get(User, user_id)
        if user and user.is_active:
            return user
        return None
    except Exception as e:
        logger.error(f"Error getting current user: {e}", exc_info=True)
        return None


def can_access_client(user, client_id) -> bool:
    """Staff see every tenant; everyone else only their own."""
    if user is None:
        return False
    return user.is_staff or user.client_id == client_id


def can_view_user_activity(viewer, target) -> bool:
    """Staff see anyone; users see themselves; client owners/admins see their own client's users."""
    if viewer is None or target is None:
        return False
    if viewer.is_staff or viewer.id == target.id:
        return True
    return (
        viewer.role in ("owner", "admin")
        and viewer.client_id is not None
        and viewer.client_id == target.client_id
    )


def login_required(f):
    """Decorator to require authentication for a route."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({'error': 'Authentication required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def staff_required(f):
    """Decorator to require an agency staff or platform admin user."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({'error': 'Authentication required'}), 401
        if not user.is_staff:
            return jsonify({'error': 'Staff access required'}), 403
        return f(*args, **kwargs)
    return decorated_function
