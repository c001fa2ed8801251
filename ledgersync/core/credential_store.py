from __future__ import annotations

import base64
import hashlib
import os
from typing import Optional

try:
    from cryptography.fernet import Fernet, InvalidToken
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "cryptography is required for encrypted credential storage. "
        "Install dependencies with: pip install -e . "
        f"Original error: {type(e).__name__}: {e}"
    ) from e
from sqlalchemy.orm import Session

from ledgersync.db.models import ExternalCredential
from ledgersync.utils.time import utcnow


API_KEY = "api_key"
API_SECRET = "api_secret"


class CredentialError(Exception):
    pass


def secret_key_available() -> bool:
    v = os.environ.get("APP_SECRET_KEY")
    return bool(v and v.strip())


def _fernet() -> Fernet:
    secret = os.environ.get("APP_SECRET_KEY")
    if not secret or not secret.strip():
        raise CredentialError("APP_SECRET_KEY is required to store credentials in DB.")
    # Any passphrase works: derive the 32-byte Fernet key from it.
    key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
    return Fernet(key)


def encrypt_value(plaintext: str) -> str:
    return _fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_value(token: str) -> str:
    try:
        return _fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise CredentialError("Failed to decrypt credential (wrong APP_SECRET_KEY?).") from e


def _credential_row(session: Session, *, connection_id: int, key: str) -> Optional[ExternalCredential]:
    return (
        session.query(ExternalCredential)
        .filter(ExternalCredential.connection_id == connection_id, ExternalCredential.key == key)
        .one_or_none()
    )


def upsert_credential(session: Session, *, connection_id: int, key: str, plaintext: str) -> None:
    if not (plaintext or "").strip():
        raise CredentialError(f"Empty value for credential {key!r}.")
    token = encrypt_value(plaintext.strip())
    now = utcnow()
    row = _credential_row(session, connection_id=connection_id, key=key)
    if row is None:
        session.add(
            ExternalCredential(
                connection_id=connection_id,
                key=key,
                value_encrypted=token,
                created_at=now,
                updated_at=now,
            )
        )
    else:
        row.value_encrypted = token
        row.updated_at = now


def get_credential(session: Session, *, connection_id: int, key: str) -> Optional[str]:
    row = _credential_row(session, connection_id=connection_id, key=key)
    if row is None:
        return None
    if not secret_key_available():
        # Cannot decrypt without a key; treat as unavailable.
        return None
    return decrypt_value(row.value_encrypted)


def store_api_credentials(session: Session, *, connection_id: int, api_key: str, api_secret: str) -> None:
    upsert_credential(session, connection_id=connection_id, key=API_KEY, plaintext=api_key)
    upsert_credential(session, connection_id=connection_id, key=API_SECRET, plaintext=api_secret)


def load_api_credentials(session: Session, *, connection_id: int) -> tuple[str, str]:
    api_key = get_credential(session, connection_id=connection_id, key=API_KEY)
    api_secret = get_credential(session, connection_id=connection_id, key=API_SECRET)
    if not api_key or not api_secret:
        raise CredentialError(
            f"Connection {connection_id} has no usable API key/secret (missing, or APP_SECRET_KEY not set)."
        )
    return api_key, api_secret
