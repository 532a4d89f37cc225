"""
Celery tasks for archive operations.

Provides asynchronous tasks for account syncing, scheduling and health
monitoring.
"""

import logging
from datetime import timedelta

from celery import shared_task
from django.db import transaction
from django.utils import timezone

from mailvault.sync.exceptions import SyncAbortedError, TransientRemoteError

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(TransientRemoteError,),
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=3,
)
def sync_account_task(self, account_id: int, full_resync: bool = False):
    """
    Sync a mailbox account.

    Args:
        account_id: Account ID to sync
        full_resync: Ignore the stored state token and enumerate everything
    """
    from mailvault import secrets
    from mailvault.models import Account
    from mailvault.providers.jmap import JmapClient
    from mailvault.search import SearchIndexNotifier
    from mailvault.storage import get_object_store
    from mailvault.sync import SyncEngine

    try:
        account = Account.objects.get(id=account_id, is_active=True)
    except Account.DoesNotExist:
        logger.warning(f"Account {account_id} not found or inactive")
        return {"status": "skipped", "reason": "account_not_found"}

    if not secrets.has_secret(account):
        logger.warning(f"No secret stored for {account.name}")
        return {"status": "skipped", "reason": "missing_secret"}

    logger.info(f"Starting sync for account {account.id} ({account.name})")

    store = get_object_store(account)
    engine = SyncEngine(
        account=account,
        store=store,
        client=JmapClient(account),
        notifier=SearchIndexNotifier(account, store),
    )

    try:
        result = engine.run_sync(full_resync=full_resync)
    except SyncAbortedError as e:
        logger.warning(f"Sync skipped for {account.name}: {e}")
        return {"status": "skipped", "reason": str(e)}

    return {
        "status": "partial" if result.errors else "completed",
        "account_id": account_id,
        "passes": result.passes,
        "objects_archived": result.objects_archived,
        "objects_skipped": result.objects_skipped,
        "objects_failed": result.objects_failed,
        "bytes_archived": result.bytes_archived,
        "full_resync": result.full_resync,
        "mailboxes_archived": result.mailboxes_archived,
        "errors": len(result.errors),
    }


@shared_task
def sync_all_accounts():
    """
    Sync all active accounts.

    Schedules individual sync tasks for each enabled account.
    """
    from mailvault.models import Account

    scheduled = 0
    for account in Account.objects.filter(is_active=True):
        sync_account_task.delay(account.id)
        scheduled += 1
        logger.info(f"Scheduled sync for account {account.id}")

    logger.info(f"Scheduled syncs for {scheduled} accounts")
    return {"scheduled": scheduled}


@shared_task
def sync_due_accounts():
    """Sync accounts whose next_sync_at has passed."""
    from django.db.models import Q

    from mailvault.models import Account

    now = timezone.now()

    scheduled = 0
    with transaction.atomic():
        due_accounts = Account.objects.filter(
            Q(next_sync_at__lte=now) | Q(next_sync_at__isnull=True),
            is_active=True,
            sync_interval_minutes__gt=0,
        ).select_for_update(skip_locked=True)

        for account in due_accounts:
            sync_account_task.delay(account.id)

            account.next_sync_at = now + timedelta(minutes=account.sync_interval_minutes)
            account.save(update_fields=['next_sync_at'])
            scheduled += 1
            logger.info(f"Scheduled sync for account {account.id}, next at {account.next_sync_at}")

    return {"scheduled": scheduled}


@shared_task
def check_account_health():
    """Check health of all accounts and log issues."""
    from mailvault import secrets
    from mailvault.models import Account, PendingStatus
    from mailvault.sync.models import SyncSession

    now = timezone.now()
    issues = []

    accounts = list(Account.objects.filter(is_active=True))
    for account in accounts:
        account_issues = []

        if not secrets.has_secret(account):
            account_issues.append("missing_secret")

        # No successful sync in 24+ hours
        last_session = SyncSession.objects.filter(
            account=account,
            status__in=["completed", "partial"],
        ).order_by("-completed_at").first()

        if last_session:
            if last_session.completed_at < now - timedelta(hours=24):
                account_issues.append("stale_sync")
        else:
            account_issues.append("never_synced")

        recent_failures = SyncSession.objects.filter(
            account=account,
            status="failed",
            started_at__gte=now - timedelta(hours=24)
        ).count()

        if recent_failures >= 3:
            account_issues.append("repeated_failures")

        if account.pending_objects.filter(status=PendingStatus.FAILED).exists():
            account_issues.append("failed_objects")

        if account_issues:
            issues.append({
                "account_id": account.id,
                "name": account.name,
                "issues": account_issues,
            })
            logger.warning(f"Health issues for {account.name}: {account_issues}")

    logger.info(f"Health check complete: {len(accounts)} accounts checked, {len(issues)} with issues")

    return {
        "checked": len(accounts),
        "issues": issues,
    }
