"""
Secrets manager for storing JMAP credentials outside the database.

Credentials are stored in a JSON file with restricted permissions (600),
keyed by account name. This keeps passwords and API tokens out of the
database entirely.
"""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from django.conf import settings

if TYPE_CHECKING:
    from mailvault.models import Account

logger = logging.getLogger(__name__)


class SecretsError(Exception):
    """Base exception for secrets operations."""

    pass


class SecretsFileError(SecretsError):
    """Raised when secrets file operations fail."""

    pass


class SecretNotFoundError(SecretsError):
    """Raised when no secret is stored for an account."""

    pass


def _get_secrets_path() -> Path:
    """Get the path to the secrets file."""
    return Path(settings.MAILVAULT_SECRETS_FILE)


def _get_account_key(account: "Account") -> str:
    """
    Generate the key for an account in the secrets file.

    Format: jmap:{name}
    """
    return f"jmap:{account.name}"


def _load_secrets() -> dict:
    """
    Load secrets from the secrets file.

    Returns:
        Dict of account secrets, empty dict if file doesn't exist
    """
    path = _get_secrets_path()

    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in secrets file: {e}")
        raise SecretsFileError(f"Invalid secrets file format: {e}") from e
    except OSError as e:
        logger.error(f"Failed to read secrets file: {e}")
        raise SecretsFileError(f"Failed to read secrets file: {e}") from e


def _save_secrets(data: dict) -> None:
    """
    Save secrets to the secrets file atomically.

    Uses atomic write (temp file + rename) and sets permissions to 600.
    """
    path = _get_secrets_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=".secrets_",
            suffix=".tmp",
        )

        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)

            # Set restrictive permissions before rename
            os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)  # 600

            os.replace(tmp_path, path)

        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    except OSError as e:
        logger.error(f"Failed to save secrets file: {e}")
        raise SecretsFileError(f"Failed to save secrets file: {e}") from e


def get_secret(account: "Account") -> str | None:
    """
    Get the password or API token for an account.

    Returns:
        The secret string, or None if not stored
    """
    entry = _load_secrets().get(_get_account_key(account))
    if not entry:
        return None
    return entry.get("secret")


def require_secret(account: "Account") -> str:
    """
    Get the secret for an account or raise.

    Raises:
        SecretNotFoundError: If no secret is stored
    """
    secret = get_secret(account)
    if not secret:
        raise SecretNotFoundError(f"No secret stored for account {account.name}")
    return secret


def set_secret(account: "Account", secret: str) -> None:
    """Store the password or API token for an account."""
    secrets = _load_secrets()
    key = _get_account_key(account)

    secrets[key] = {"secret": secret}

    _save_secrets(secrets)
    logger.info(f"Saved secret for account {key}")


def delete_secret(account: "Account") -> bool:
    """
    Delete the secret for an account.

    Returns:
        True if the secret was deleted, False if not found
    """
    secrets = _load_secrets()
    key = _get_account_key(account)

    if key not in secrets:
        return False

    del secrets[key]
    _save_secrets(secrets)
    logger.info(f"Deleted secret for account {key}")
    return True


def has_secret(account: "Account") -> bool:
    """Check if a secret exists for an account."""
    return _get_account_key(account) in _load_secrets()


def list_accounts() -> list[str]:
    """
    List all account names that have a stored secret.

    Returns:
        List of account names
    """
    return [
        key.split(":", 1)[1]
        for key in _load_secrets().keys()
        if key.startswith("jmap:")
    ]
