"""
Django management command to store the password or API token of an account.
"""

import getpass

from django.core.management.base import BaseCommand, CommandError

from mailvault import secrets

from ._common import resolve_account


class Command(BaseCommand):
    help = "Store the JMAP password or API token for an account in the secrets file"

    def add_arguments(self, parser):
        parser.add_argument("account", help="Account ID or name")
        parser.add_argument(
            "--secret",
            help="Secret value (prompted for when omitted)",
        )
        parser.add_argument(
            "--delete",
            action="store_true",
            help="Remove the stored secret instead",
        )

    def handle(self, *args, **options):
        account = resolve_account(options["account"], active_only=False)

        if options["delete"]:
            if secrets.delete_secret(account):
                self.stdout.write(self.style.SUCCESS(f"✓ Deleted secret for {account.name}"))
            else:
                self.stdout.write(self.style.WARNING(f"No secret stored for {account.name}"))
            return

        secret = options["secret"] or getpass.getpass(f"Secret for {account.name}: ")
        if not secret:
            raise CommandError("Secret must not be empty")

        try:
            secrets.set_secret(account, secret)
        except secrets.SecretsError as e:
            raise CommandError(str(e))

        self.stdout.write(self.style.SUCCESS(f"✓ Stored secret for {account.name}"))
