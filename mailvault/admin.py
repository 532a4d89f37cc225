from django.contrib import admin

from .models import Account, ManifestEntry, PendingObject, SearchDocument, SyncState
from .sync.models import SyncEvent, SyncSession


@admin.register(Account)
class AccountAdmin(admin.ModelAdmin):
    list_display = [
        "name",
        "host",
        "auth_mode",
        "is_active",
        "sync_interval_minutes",
        "next_sync_at",
        "created_at",
    ]
    list_filter = ["auth_mode", "is_active"]
    list_editable = ["sync_interval_minutes"]
    search_fields = ["name", "host", "username"]
    readonly_fields = ["next_sync_at"]


@admin.register(SyncState)
class SyncStateAdmin(admin.ModelAdmin):
    list_display = ["account", "manifest_version", "last_committed_at", "lock_owner", "lock_expires_at"]
    readonly_fields = ["account", "state_token", "manifest_version", "last_committed_at"]


@admin.register(ManifestEntry)
class ManifestEntryAdmin(admin.ModelAdmin):
    list_display = ["remote_id", "account", "content_key", "size_bytes", "archived_at", "manifest_version"]
    list_filter = ["account"]
    search_fields = ["remote_id", "content_key"]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PendingObject)
class PendingObjectAdmin(admin.ModelAdmin):
    list_display = ["remote_id", "account", "status", "attempts", "updated_at"]
    list_filter = ["status", "account"]
    search_fields = ["remote_id", "last_error"]


@admin.register(SearchDocument)
class SearchDocumentAdmin(admin.ModelAdmin):
    list_display = ["subject", "sender", "account", "sent_at"]
    list_filter = ["account"]
    search_fields = ["subject", "sender", "recipients"]


@admin.register(SyncSession)
class SyncSessionAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "account",
        "status",
        "is_full_resync",
        "started_at",
        "completed_at",
        "passes",
        "objects_archived",
        "objects_skipped",
        "objects_failed",
    ]
    list_filter = ["status", "is_full_resync", "started_at"]
    search_fields = ["account__name"]
    readonly_fields = ["started_at", "completed_at", "start_token", "end_token"]

    def get_queryset(self, request):
        return super().get_queryset(request).select_related("account")


@admin.register(SyncEvent)
class SyncEventAdmin(admin.ModelAdmin):
    list_display = ["id", "session", "event_type", "timestamp", "remote_id"]
    list_filter = ["event_type", "timestamp"]
    search_fields = ["remote_id", "content_key", "message"]
    readonly_fields = ["timestamp"]
    raw_id_fields = ["session"]
