from flask import jsonify, request, session, current_app
from invoiceflow.auth import auth
from invoiceflow.auth.models import User
from invoiceflow.errors import NotAuthenticated, ValidationFailure


@auth.route('/login', methods=['POST'])
def login():
    """Validate credentials (form or JSON) and populate the session."""
    data = request.get_json(silent=True) or request.form
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        raise ValidationFailure('Username and password are required.')

    user = User.query.filter_by(username=username).first()
    if user is None or not user.check_password(password):
        # Same message for unknown user and wrong password
        current_app.logger.warning(f"Failed login attempt for username: {username}")
        raise NotAuthenticated('Invalid username or password.')

    session.clear()
    session['user_id'] = user.id
    session.permanent  = True             # respect PERMANENT_SESSION_LIFETIME

    current_app.logger.info(f"User {user.username} logged in successfully.")
    return jsonify({'id': user.id, 'name': user.name, 'username': user.username})


@auth.route('/logout')
def logout():
    """Clear the session."""
    session.clear()
    return jsonify({'message': 'You have been logged out.'})
