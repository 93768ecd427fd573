from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_wtf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()


def _rate_limit_key():
    # Callers are identified by organization when they send one; otherwise client IP
    from flask import request
    org_id = request.headers.get("X-Organization-Id")
    if org_id:
        return f"org:{org_id}"
    return get_remote_address()

# Storage is configured in create_app() via limiter.init_app(...).
limiter = Limiter(key_func=_rate_limit_key)
