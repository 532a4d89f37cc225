from django.core.management.base import CommandError

from mailvault.models import Account


def resolve_account(identifier: str, active_only: bool = True) -> Account:
    """Look up an account by numeric ID or by name."""
    accounts = Account.objects.all()
    if active_only:
        accounts = accounts.filter(is_active=True)

    account = None
    if identifier.isdigit():
        account = accounts.filter(id=int(identifier)).first()
    if account is None:
        account = accounts.filter(name=identifier).first()

    if account is None:
        qualifier = " or inactive" if active_only else ""
        raise CommandError(f"Account {identifier} not found{qualifier}")
    return account
