import os
from functools import wraps

from flask import (
    Blueprint,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash

auth_bp = Blueprint('auth', __name__)

# Dashboard roles and the environment variable holding each role's password.
ROLE_PASSWORD_ENV = (
    ('USER', 'USER_PASSWORD'),
    ('ADMIN', 'ADMIN_PASSWORD'),
)


def _load_environment_users():
    hashes = {}
    for role, env_key in ROLE_PASSWORD_ENV:
        secret = os.environ.get(env_key)
        if secret:
            hashes[role] = generate_password_hash(secret)
    return hashes


ENVIRONMENT_USERS = _load_environment_users()


def authenticate(username, password):
    """Return the role matching ``username``/``password`` or ``None``."""

    role = (username or '').strip().upper()
    stored = ENVIRONMENT_USERS.get(role)
    if stored and check_password_hash(stored, password or ''):
        return role
    return None


def current_role():
    return (session.get('role') or session.get('username') or '').upper()


def _deny(status, message):
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'error': message}), status
    if status == 401:
        return redirect(url_for('auth.login'))
    flash('Only administrators can change inspection data.')
    return redirect(url_for('main.report'))


def _role_required(allowed_roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not session.get('username'):
                return _deny(401, 'Authentication required')
            if allowed_roles and current_role() not in allowed_roles:
                return _deny(403, 'Admin access required')
            return view(*args, **kwargs)

        return wrapped

    return decorator


login_required = _role_required(None)
admin_required = _role_required({'ADMIN'})


@auth_bp.route('/', methods=['GET', 'POST'])
@auth_bp.route('/login', methods=['GET', 'POST'])
def login():
    if request.method != 'POST':
        return render_template('login.html')

    username = (request.form.get('username') or '').strip()
    role = authenticate(username, request.form.get('password'))
    if role is None:
        flash('Invalid credentials.')
        return render_template('login.html')

    session['username'] = username
    session['role'] = role
    return redirect(url_for('main.report'))


@auth_bp.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('auth.login'))
