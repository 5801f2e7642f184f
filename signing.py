from typing import Any

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings
from errors import ValidationFailure


def _serializer(salt: str) -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.metadata_secret, salt=salt)


def sign_metadata(data: dict[str, Any]) -> str:
    """Serialize modal private metadata so a callback cannot forge its target."""
    return _serializer("modal-metadata").dumps(data)


def load_metadata(token: str) -> dict[str, Any]:
    try:
        data = _serializer("modal-metadata").loads(token)
    except BadSignature as exc:
        raise ValidationFailure("Invalid modal metadata") from exc
    if not isinstance(data, dict):
        raise ValidationFailure("Invalid modal metadata")
    return data


def seal_token(access_token: str) -> str:
    # Signed, not encrypted. Encryption at rest belongs to the storage layer.
    return _serializer("access-token").dumps({"t": access_token})


def unseal_token(sealed: str) -> str:
    try:
        data = _serializer("access-token").loads(sealed)
    except BadSignature as exc:
        raise ValidationFailure("Stored access token failed verification") from exc
    return data["t"]
