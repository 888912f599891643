import time
from typing import Optional

from fastapi import Header, HTTPException
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from services import get_current_user_id

CSRF_HEADER = "X-CSRF-Token"
TOKEN_MAX_AGE_HOURS = 2


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="budgetlens-csrf")


def generate_csrf_token(user_id: int = 1) -> str:
    return _serializer().dumps({"u": user_id, "ts": int(time.time())})


def validate_csrf_token(
    token: Optional[str], user_id: int = 1, max_age_hours: int = TOKEN_MAX_AGE_HOURS
) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("u") == user_id


def require_csrf(x_csrf_token: Optional[str] = Header(default=None)) -> None:
    if not validate_csrf_token(x_csrf_token, get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
