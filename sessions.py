import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session-token")


def issue_session_token(user_id: str) -> str:
    return _serializer().dumps({"u": user_id, "ts": int(time.time())})


def decode_session_token(
    token: Optional[str], max_age_hours: Optional[int] = None
) -> Optional[str]:
    """Return the user id embedded in ``token`` or ``None``.

    Tampered, malformed and expired tokens all decode to ``None``.
    """
    if not token:
        return None
    if max_age_hours is None:
        max_age_hours = get_settings().session_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return None

    if not isinstance(data, dict):
        return None
    user_id = data.get("u")
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id
