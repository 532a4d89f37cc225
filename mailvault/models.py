from django.db import models


class AuthMode(models.TextChoices):
    TOKEN = "token", "Bearer Token"
    BASIC = "basic", "Basic (username:password)"


class PendingStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    FAILED = "failed", "Failed"


class ImmutableRecordError(Exception):
    """Raised when code tries to rewrite or remove an archived record."""

    pass


class Account(models.Model):
    """
    A JMAP mailbox profile.

    Passwords and API tokens are stored externally in the secrets file,
    not in the database. See mailvault/secrets.py.
    """

    name = models.CharField(max_length=255, unique=True)
    host = models.URLField(help_text="JMAP server, e.g. https://api.fastmail.com")
    auth_mode = models.CharField(
        max_length=10, choices=AuthMode.choices, default=AuthMode.TOKEN
    )
    username = models.CharField(max_length=255, blank=True)
    storage_root = models.CharField(
        max_length=255,
        blank=True,
        help_text="Directory under MAILVAULT_STORAGE_ROOT. Defaults to the account name.",
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Per-account sync scheduling
    sync_interval_minutes = models.PositiveIntegerField(
        default=360,  # 6 hours
        help_text="Minutes between syncs. 0 = use global schedule only."
    )
    next_sync_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Next scheduled sync time."
    )

    class Meta:
        indexes = [
            models.Index(fields=["is_active", "next_sync_at"]),
        ]

    def __str__(self):
        return f"{self.name} ({self.host})"

    @property
    def storage_name(self) -> str:
        return self.storage_root or self.name


class SyncState(models.Model):
    """
    Last acknowledged remote position for an account.

    Only the checkpoint committer changes the token and version; the lock
    fields hold the single-writer lease for an active pass.
    """

    account = models.OneToOneField(
        Account, on_delete=models.CASCADE, related_name="sync_state"
    )
    state_token = models.TextField(blank=True)
    manifest_version = models.PositiveBigIntegerField(default=0)
    last_committed_at = models.DateTimeField(null=True, blank=True)
    lock_owner = models.CharField(max_length=64, blank=True)
    lock_expires_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"{self.account.name} @ v{self.manifest_version}"


class ManifestEntry(models.Model):
    """One archived message. Rows are append-only."""

    account = models.ForeignKey(
        Account, on_delete=models.CASCADE, related_name="manifest_entries"
    )
    remote_id = models.CharField(max_length=255)
    content_key = models.CharField(max_length=71)  # sha256:<64 hex chars>
    size_bytes = models.BigIntegerField()
    archived_at = models.DateTimeField()
    manifest_version = models.PositiveBigIntegerField()

    class Meta:
        unique_together = [["account", "remote_id"]]
        indexes = [
            models.Index(fields=["account", "content_key"]),
            models.Index(fields=["account", "manifest_version"]),
        ]
        ordering = ["manifest_version", "id"]

    def __str__(self):
        return f"{self.remote_id} -> {self.content_key[:20]}..."

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError(
                f"Manifest entry {self.remote_id} is immutable"
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError(
            f"Manifest entry {self.remote_id} cannot be deleted"
        )


class PendingObject(models.Model):
    """A unit that failed in a committed pass and is retried by later passes."""

    account = models.ForeignKey(
        Account, on_delete=models.CASCADE, related_name="pending_objects"
    )
    remote_id = models.CharField(max_length=255)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    status = models.CharField(
        max_length=10, choices=PendingStatus.choices, default=PendingStatus.PENDING
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = [["account", "remote_id"]]
        indexes = [
            models.Index(fields=["account", "status"]),
        ]
        ordering = ["id"]

    def __str__(self):
        return f"{self.remote_id} ({self.get_status_display()}, {self.attempts} attempts)"


class SearchDocument(models.Model):
    """Searchable headers and text of an archived message."""

    account = models.ForeignKey(
        Account, on_delete=models.CASCADE, related_name="search_documents"
    )
    content_key = models.CharField(max_length=71)
    remote_id = models.CharField(max_length=255)
    subject = models.TextField(blank=True)
    sender = models.TextField(blank=True)
    recipients = models.TextField(blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    body = models.TextField(blank=True)
    indexed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = [["account", "content_key"]]
        ordering = ["-sent_at", "id"]

    def __str__(self):
        return self.subject or self.content_key
