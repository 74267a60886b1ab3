"""Re-encrypt stored face templates with a fresh Fernet key."""

from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.utils import timezone

from recognition.audit import AuditRecorder, Severity
from recognition.errors import DecryptionError, EncryptionError
from recognition.models import FaceTemplate
from recognition.vault import TemplateVault


class Command(BaseCommand):
    """Rotate every enrolled template to a new key in a single transaction."""

    help = (
        "Re-encrypt all stored face templates using a new Fernet key. Deploy the new "
        "key as FACE_DATA_ENCRYPTION_KEY (and FACE_DATA_KEY_REFERENCE) right after the "
        "command succeeds."
    )

    def add_arguments(self, parser) -> None:  # pragma: no cover - argparse wiring
        parser.add_argument(
            "--new-key",
            required=True,
            help="New base64 Fernet key for face template encryption.",
        )
        parser.add_argument(
            "--new-key-reference",
            help="Label stored next to each rotated template (defaults to a timestamp).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Verify every template decrypts and list them without writing changes.",
        )

    def handle(self, *args, **options) -> None:
        dry_run: bool = options["dry_run"]
        reference = options.get("new_key_reference") or timezone.now().strftime(
            "rotated-%Y%m%d%H%M%S"
        )

        current = TemplateVault()
        target = TemplateVault(key=options["new_key"], key_reference=reference)
        try:
            target.encrypt_template([1.0])
        except EncryptionError as exc:
            raise CommandError(f"The new key is not a valid Fernet key: {exc}") from exc

        templates = list(FaceTemplate.objects.order_by("id"))
        self.stdout.write(
            self.style.NOTICE(f"Found {len(templates)} face templates to re-encrypt.")
        )

        rotated = 0
        with transaction.atomic():
            for template in templates:
                try:
                    token = current.reencrypt(bytes(template.encrypted_encoding), target)
                except DecryptionError as exc:
                    raise CommandError(
                        f"Failed to decrypt face template {template.pk} with the current key."
                    ) from exc

                if dry_run:
                    self.stdout.write(f"Would rotate: face template {template.pk}")
                    continue

                template.encrypted_encoding = token
                template.key_reference = reference
                template.save(update_fields=["encrypted_encoding", "key_reference", "updated_at"])
                rotated += 1

        if dry_run:
            self.stdout.write(self.style.SUCCESS("Dry-run complete; no templates modified."))
            return

        AuditRecorder().record(
            None,
            "face_template_key_rotated",
            resource_type="face_template",
            new_values={"templates": rotated, "key_reference": reference},
            severity=Severity.HIGH,
        )
        self.stdout.write(
            self.style.SUCCESS(f"Re-encrypted {rotated} face templates under '{reference}'.")
        )
