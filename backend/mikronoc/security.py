"""Symmetric encryption for router credentials stored in the database."""
from __future__ import annotations

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app, has_app_context


class CredentialCipherError(ValueError):
    """Raised when ENCRYPTION_KEY is missing or a stored secret cannot be decrypted."""


def _fernet(key: Optional[str] = None) -> Fernet:
    if key is None and has_app_context():
        key = current_app.config.get('ENCRYPTION_KEY')
    if not key:
        raise CredentialCipherError('ENCRYPTION_KEY is not configured')
    try:
        return Fernet(key.encode('utf-8') if isinstance(key, str) else key)
    except (TypeError, ValueError) as exc:
        raise CredentialCipherError('ENCRYPTION_KEY is not a valid Fernet key') from exc


def encrypt_secret(plain: str, key: Optional[str] = None) -> str:
    return _fernet(key).encrypt(str(plain).encode('utf-8')).decode('utf-8')


def decrypt_secret(token: Optional[str], key: Optional[str] = None) -> str:
    if not token:
        return ''
    try:
        return _fernet(key).decrypt(token.encode('utf-8')).decode('utf-8')
    except InvalidToken as exc:
        raise CredentialCipherError('stored secret cannot be decrypted with ENCRYPTION_KEY') from exc
