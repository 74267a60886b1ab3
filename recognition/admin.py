"""Admin registrations for the recognition app."""

from django.contrib import admin

from .models import FaceTemplate


@admin.register(FaceTemplate)
class FaceTemplateAdmin(admin.ModelAdmin):
    """List enrolled templates; the encrypted encoding is never displayed."""

    list_display = (
        "id",
        "user",
        "is_primary",
        "quality_score",
        "key_reference",
        "template_hash",
        "created_at",
    )
    list_filter = ("is_primary", "key_reference")
    search_fields = ("user__username", "user__employee_id", "template_hash")
    ordering = ("-created_at",)
    exclude = ("encrypted_encoding",)
    readonly_fields = (
        "user",
        "key_reference",
        "template_hash",
        "quality_score",
        "metadata",
        "created_at",
        "updated_at",
    )

    def has_add_permission(self, request) -> bool:
        return False
