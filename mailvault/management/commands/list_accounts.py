"""
Django management command to list all accounts and their status.
"""

import json

from django.core.management.base import BaseCommand

from mailvault import secrets
from mailvault.models import Account, PendingStatus, SyncState


class Command(BaseCommand):
    help = "List all accounts with their archive status"

    def add_arguments(self, parser):
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON",
        )

    def handle(self, *args, **options):
        accounts = Account.objects.filter(is_active=True).order_by("name")

        if not accounts.exists():
            self.stdout.write(self.style.WARNING("No accounts found."))
            self.stdout.write("\nRun 'python manage.py discover_accounts' to import from MAILVAULT_ACCOUNTS")
            return

        if options["json"]:
            self._output_json(accounts)
        else:
            self._output_table(accounts)

    def _get_status(self, account: Account) -> dict:
        state = SyncState.objects.filter(account=account).first()
        last_sync = state.last_committed_at if state else None
        return {
            "secret": "present" if secrets.has_secret(account) else "missing",
            "last_sync": last_sync.strftime("%Y-%m-%d %H:%M") if last_sync else "never",
            "manifest_version": state.manifest_version if state else 0,
            "archived": account.manifest_entries.count(),
            "pending": account.pending_objects.filter(status=PendingStatus.PENDING).count(),
            "failed": account.pending_objects.filter(status=PendingStatus.FAILED).count(),
        }

    def _output_table(self, accounts):
        """Output accounts as formatted table."""
        self.stdout.write("\n" + "=" * 80)
        self.stdout.write(
            f"{'ID':<4} {'Name':<20} {'Secret':<10} {'Archived':>9} {'Failed':>7} {'Last Sync':>17}"
        )
        self.stdout.write("=" * 80)

        for account in accounts:
            status = self._get_status(account)

            if status["secret"] == "present":
                secret_display = self.style.SUCCESS("present")
            else:
                secret_display = self.style.ERROR("missing")

            self.stdout.write(
                f"{account.id:<4} {account.name:<20} {secret_display:<19} "
                f"{status['archived']:>9} {status['failed']:>7} {status['last_sync']:>17}"
            )

        self.stdout.write("=" * 80)
        self.stdout.write(f"Total: {accounts.count()} account(s)\n")

    def _output_json(self, accounts):
        """Output accounts as JSON."""
        data = []
        for account in accounts:
            status = self._get_status(account)
            data.append({
                "id": account.id,
                "name": account.name,
                "host": account.host,
                "auth_mode": account.auth_mode,
                "is_active": account.is_active,
                "secret_status": status["secret"],
                "last_sync": status["last_sync"],
                "manifest_version": status["manifest_version"],
                "objects_archived": status["archived"],
                "objects_pending": status["pending"],
                "objects_failed": status["failed"],
            })

        self.stdout.write(json.dumps(data, indent=2))
