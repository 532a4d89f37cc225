"""
Models for tracking sync operations and events.
"""

from django.db import models

from mailvault.models import Account


class SyncSession(models.Model):
    """
    Records each sync run for audit and debugging.

    Tracks the lifecycle of a run including the tokens it moved between,
    statistics on objects archived and any errors encountered.
    """

    account = models.ForeignKey(
        Account, on_delete=models.CASCADE, related_name="sessions"
    )
    started_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    is_full_resync = models.BooleanField(default=False)

    # Tokens
    start_token = models.TextField(blank=True)
    end_token = models.TextField(blank=True)

    # Status
    status = models.CharField(
        max_length=20,
        choices=[
            ("running", "Running"),
            ("completed", "Completed"),
            ("failed", "Failed"),
            ("partial", "Partial Success"),
            ("cancelled", "Cancelled"),
        ],
        default="running",
    )

    # Statistics
    passes = models.PositiveIntegerField(default=0)
    objects_archived = models.PositiveIntegerField(default=0)
    objects_skipped = models.PositiveIntegerField(default=0)
    objects_failed = models.PositiveIntegerField(default=0)
    bytes_archived = models.BigIntegerField(default=0)

    error_message = models.TextField(blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["account", "-started_at"]),
            models.Index(fields=["status"]),
        ]
        ordering = ["-started_at"]

    def __str__(self):
        status_display = self.get_status_display()
        sync_type = "Full resync" if self.is_full_resync else "Incremental"
        return f"{sync_type} sync of {self.account.name} - {status_display}"


class SyncEvent(models.Model):
    """
    Individual events during a sync session.

    Provides an audit trail of archived objects, failures, checkpoints
    and resynchronizations.
    """

    session = models.ForeignKey(
        SyncSession, on_delete=models.CASCADE, related_name="events"
    )
    timestamp = models.DateTimeField(auto_now_add=True)

    event_type = models.CharField(
        max_length=20,
        choices=[
            ("object_archived", "Object Archived"),
            ("object_failed", "Object Failed"),
            ("checkpoint", "Checkpoint"),
            ("resync", "Full Resync"),
            ("notify_failed", "Notify Failed"),
            ("mailbox_snapshot", "Mailbox Snapshot"),
            ("mailbox_failed", "Mailbox Failed"),
            ("error", "Error"),
        ],
    )

    remote_id = models.CharField(max_length=255, blank=True)
    content_key = models.CharField(max_length=71, blank=True)
    message = models.TextField(blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["session", "timestamp"]),
            models.Index(fields=["event_type"]),
        ]
        ordering = ["timestamp", "id"]

    def __str__(self):
        return f"{self.get_event_type_display()}: {self.remote_id or self.content_key or 'N/A'}"
