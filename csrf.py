import secrets
import time

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

CSRF_HEADER = "X-CSRF-Token"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="finanzas-csrf")


def generate_csrf_token(max_age_hours: int = 2) -> str:
    issued = int(time.time())
    return _serializer().dumps(
        {"n": secrets.token_hex(8), "exp": issued + max_age_hours * 3600}
    )


def validate_csrf_token(token: str, max_age_hours: int = 2) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return False
    if not isinstance(data, dict):
        return False
    return int(time.time()) <= int(data.get("exp", 0))
