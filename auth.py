from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


class InvalidToken(ValueError):
    pass


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="api-token")


def issue_token(user_id: int) -> str:
    """Sign a bearer token for ``user_id``.

    Tokens are minted by the identity provider that shares the secret key;
    this API only verifies them.
    """
    return _serializer().dumps({"u": user_id})


def resolve_user_id(token: str, max_age_hours: Optional[int] = None) -> int:
    hours = max_age_hours or get_settings().token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=hours * 3600)
    except SignatureExpired as exc:
        raise InvalidToken("Token expired") from exc
    except BadSignature as exc:
        raise InvalidToken("Invalid token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
        raise InvalidToken("Invalid token")
    return user_id
