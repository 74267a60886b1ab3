"""Database models for the recognition app."""

from __future__ import annotations

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q


class FaceTemplateQuerySet(models.QuerySet["FaceTemplate"]):
    def for_user(self, user) -> "FaceTemplateQuerySet":
        """Templates owned by ``user`` in stable comparison order (oldest first)."""

        return self.filter(user=user).order_by("id")

    def primary(self) -> "FaceTemplateQuerySet":
        return self.filter(is_primary=True)


class FaceTemplate(models.Model):
    """An enrolled biometric reference for a user.

    ``encrypted_encoding`` holds a Fernet token and is never exposed outside the
    vault; only ``template_hash`` and ``quality_score`` are visible to clients.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="face_templates",
    )
    encrypted_encoding = models.BinaryField(editable=False)
    key_reference = models.CharField(
        max_length=64,
        help_text="Label of the encryption key that sealed the encoding.",
    )
    template_hash = models.CharField(max_length=64, db_index=True)
    quality_score = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )
    is_primary = models.BooleanField(default=False)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects: FaceTemplateQuerySet = FaceTemplateQuerySet.as_manager()

    class Meta:
        ordering = ["id"]
        constraints = [
            models.UniqueConstraint(
                fields=["user"],
                condition=Q(is_primary=True),
                name="unique_primary_face_template",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "is_primary"], name="recognition_tpl_primary_idx"),
        ]

    def __str__(self) -> str:
        marker = " (primary)" if self.is_primary else ""
        return f"Template {self.pk} for user {self.user_id}{marker}"
