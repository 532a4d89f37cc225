"""
Django management command to search archived messages.
"""

import json

from django.core.management.base import BaseCommand

from mailvault.search import DEFAULT_LIMIT, reindex_account, search
from mailvault.storage import get_object_store

from ._common import resolve_account


class Command(BaseCommand):
    help = "Search archived messages by subject, sender and body text"

    def add_arguments(self, parser):
        parser.add_argument("account", help="Account ID or name")
        parser.add_argument("query", nargs="?", default="", help="Words that must all appear")
        parser.add_argument(
            "--limit",
            type=int,
            default=DEFAULT_LIMIT,
            help=f"Maximum results (default: {DEFAULT_LIMIT})",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON",
        )
        parser.add_argument(
            "--reindex",
            action="store_true",
            help="Rebuild the search index from the archive first",
        )

    def handle(self, *args, **options):
        account = resolve_account(options["account"], active_only=False)

        if options["reindex"]:
            count = reindex_account(account, get_object_store(account))
            self.stdout.write(f"Reindexed {count} message(s)")

        if not options["query"]:
            return

        results = search(account, options["query"], limit=options["limit"])

        if options["json"]:
            self.stdout.write(json.dumps([
                {
                    "remote_id": doc.remote_id,
                    "content_key": doc.content_key,
                    "subject": doc.subject,
                    "sender": doc.sender,
                    "sent_at": doc.sent_at.isoformat() if doc.sent_at else None,
                }
                for doc in results
            ], indent=2))
            return

        if not results:
            self.stdout.write(self.style.WARNING("No matching messages."))
            return

        for doc in results:
            sent = doc.sent_at.strftime("%Y-%m-%d %H:%M") if doc.sent_at else "unknown date"
            self.stdout.write(f"{sent}  {doc.sender}")
            self.stdout.write(f"    {doc.subject or '(no subject)'}  [{doc.remote_id}]")

        self.stdout.write(f"\n{len(results)} message(s)")
