"""
Django management command to discover accounts from configuration.
"""

from django.core.management.base import BaseCommand

from mailvault.account_discovery import discover_accounts


class Command(BaseCommand):
    help = "Discover and create accounts from the MAILVAULT_ACCOUNTS setting"

    def add_arguments(self, parser):
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Show detailed output",
        )

    def handle(self, *args, **options):
        verbose = options["verbose"]

        self.stdout.write("Scanning MAILVAULT_ACCOUNTS for accounts...")

        result = discover_accounts()

        if result.total_found == 0 and not result.errors:
            self.stdout.write(
                self.style.WARNING(
                    "\nNo accounts configured\n\n"
                    "Add account profiles to MAILVAULT_ACCOUNTS in your settings first."
                )
            )
            return

        self.stdout.write(f"\nFound {result.total_found} configured account(s)\n")

        if result.created_accounts:
            self.stdout.write(
                self.style.SUCCESS(
                    f"\n✓ Created {result.created_count} new account(s):"
                )
            )
            for name in result.created_accounts:
                self.stdout.write(f"  • {name}")

        if result.existing_accounts:
            msg = f"\n→ Found {len(result.existing_accounts)} existing account(s)"
            if verbose:
                self.stdout.write(msg + ":")
                for name in result.existing_accounts:
                    self.stdout.write(f"  • {name}")
            else:
                self.stdout.write(msg + " (already in database)")

        if result.errors:
            self.stdout.write(
                self.style.WARNING(
                    f"\n⚠ Encountered {len(result.errors)} error(s):"
                )
            )
            for error in result.errors:
                self.stdout.write(f"  • {error}")

        if result.missing_secrets:
            self.stdout.write(
                self.style.WARNING("\n⚠ These accounts have no stored secret yet:")
            )
            for name in result.missing_secrets:
                self.stdout.write(f"  python manage.py set_secret {name}")

        if result.created_accounts:
            self.stdout.write(self.style.SUCCESS("\n✓ Run sync with:\n"))
            for name in result.created_accounts:
                self.stdout.write(f"  python manage.py sync_account {name}")
