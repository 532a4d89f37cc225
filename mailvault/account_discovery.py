"""
Discovery of accounts from configuration.

Reads the MAILVAULT_ACCOUNTS setting and creates Account records that
don't exist yet. Profiles whose secret is missing from the secrets file
are reported so the operator can run set_secret.
"""

import logging
from typing import List

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import URLValidator
from django.db import transaction

from mailvault.models import Account, AuthMode
from mailvault.secrets import has_secret

logger = logging.getLogger(__name__)


class DiscoveryResult:
    """Result of account discovery."""

    def __init__(self):
        self.created_accounts: List[str] = []
        self.existing_accounts: List[str] = []
        self.missing_secrets: List[str] = []
        self.errors: List[str] = []

    @property
    def total_found(self) -> int:
        return len(self.created_accounts) + len(self.existing_accounts)

    @property
    def created_count(self) -> int:
        return len(self.created_accounts)


def _validate_profile(profile) -> str | None:
    """Return an error message for a malformed profile, or None."""
    if not isinstance(profile, dict):
        return f"Account profile must be a mapping, got {type(profile).__name__}"

    name = profile.get("name")
    if not name:
        return "Account profile is missing 'name'"

    host = profile.get("host", "")
    try:
        URLValidator(schemes=["http", "https"])(host)
    except ValidationError:
        return f"Account {name} has an invalid host: {host!r}"

    auth_mode = profile.get("auth_mode", AuthMode.TOKEN)
    if auth_mode not in AuthMode.values:
        return f"Account {name} has an unknown auth_mode: {auth_mode!r}"

    if auth_mode == AuthMode.BASIC and not profile.get("username"):
        return f"Account {name} uses basic auth but has no username"

    return None


def discover_accounts(profiles=None) -> DiscoveryResult:
    """
    Create missing Account records from configured profiles.

    Args:
        profiles: Profiles to process (defaults to settings.MAILVAULT_ACCOUNTS)

    Returns:
        DiscoveryResult with details of what was created/found
    """
    result = DiscoveryResult()

    if profiles is None:
        profiles = getattr(settings, "MAILVAULT_ACCOUNTS", [])

    if not profiles:
        logger.info("No accounts configured in MAILVAULT_ACCOUNTS")
        return result

    logger.info(f"Found {len(profiles)} configured account(s)")

    for profile in profiles:
        error = _validate_profile(profile)
        if error:
            logger.warning(error)
            result.errors.append(error)
            continue

        name = profile["name"]

        account = Account.objects.filter(name=name).first()
        if account is not None:
            logger.debug(f"Account already exists: {name}")
            result.existing_accounts.append(name)
        else:
            with transaction.atomic():
                account = Account.objects.create(
                    name=name,
                    host=profile["host"],
                    auth_mode=profile.get("auth_mode", AuthMode.TOKEN),
                    username=profile.get("username", ""),
                    storage_root=profile.get("storage_root", ""),
                    sync_interval_minutes=profile.get("sync_interval_minutes", 360),
                    is_active=True,
                )
            logger.info(f"Created account: {name} (ID: {account.id})")
            result.created_accounts.append(name)

        if not has_secret(account):
            logger.warning(f"No secret stored for {name}; run set_secret")
            result.missing_secrets.append(name)

    return result
