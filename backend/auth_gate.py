import hmac

import bcrypt
from flask import make_response, request


AUTH_REALM = 'Restricted'


class AuthGate:
    """Single-account HTTP Basic Auth check.

    Only the bcrypt hash of the configured password is kept. The username is
    compared with ``hmac.compare_digest`` so the comparison time does not
    depend on where the first differing byte is.
    """

    def __init__(self, username, password_hash):
        self.username = username
        self._username_bytes = username.encode('utf-8')
        self._password_hash = password_hash

    @classmethod
    def from_plaintext(cls, username, password, rounds=12):
        password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds))
        return cls(username, password_hash)

    def authenticate(self, provided_user, provided_password):
        if provided_user is None or provided_password is None:
            return False
        user_ok = hmac.compare_digest(str(provided_user).encode('utf-8'), self._username_bytes)
        try:
            password_ok = bcrypt.checkpw(
                str(provided_password).encode('utf-8'),
                self._password_hash
            )
        except ValueError:
            password_ok = False
        return user_ok and password_ok

    @staticmethod
    def credentials_from_request():
        auth = request.authorization
        if auth is None or auth.type != 'basic':
            return None, None
        return auth.username, auth.password

    @staticmethod
    def challenge():
        response = make_response("Unauthorized", 401)
        response.headers['WWW-Authenticate'] = f'Basic realm="{AUTH_REALM}"'
        response.mimetype = 'text/plain'
        return response
