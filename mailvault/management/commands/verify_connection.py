"""
Django management command to verify JMAP connectivity for accounts.
"""

from django.core.management.base import BaseCommand

from mailvault import secrets
from mailvault.models import Account
from mailvault.providers.jmap import JmapAuthError, JmapClient, JmapError

from ._common import resolve_account


class Command(BaseCommand):
    help = "Verify stored credentials by fetching the JMAP session"

    def add_arguments(self, parser):
        parser.add_argument(
            "account",
            nargs="?",
            help="Account ID or name to verify (optional, verifies all if not specified)",
        )

    def handle(self, *args, **options):
        if options.get("account"):
            accounts = [resolve_account(options["account"])]
        else:
            accounts = list(Account.objects.filter(is_active=True).order_by("id"))

        if not accounts:
            self.stdout.write(self.style.WARNING("No active accounts found."))
            return

        self.stdout.write(f"\nVerifying {len(accounts)} account(s)...\n")

        results = {"valid": 0, "failed": 0, "no_secret": 0}

        for account in accounts:
            self._verify_account(account, results)

        self.stdout.write("\n" + "-" * 40)
        self.stdout.write(
            f"Valid: {results['valid']}  "
            f"Failed: {results['failed']}  "
            f"No secret: {results['no_secret']}"
        )

    def _verify_account(self, account: Account, results: dict):
        prefix = f"[{account.id}] {account.name}"

        if not secrets.has_secret(account):
            self.stdout.write(f"{prefix}: " + self.style.ERROR("NO SECRET"))
            results["no_secret"] += 1
            return

        client = JmapClient(account)
        try:
            info = client.get_user_info()
            self.stdout.write(
                f"{prefix}: " + self.style.SUCCESS(f"VALID (verified as {info['username']})")
            )
            results["valid"] += 1

        except JmapAuthError as e:
            self.stdout.write(f"{prefix}: " + self.style.ERROR(f"REJECTED - {e}"))
            results["failed"] += 1

        except JmapError as e:
            self.stdout.write(f"{prefix}: " + self.style.ERROR(f"ERROR - {e}"))
            results["failed"] += 1
