import base64
import binascii

from rest_framework import serializers

from recognition.models import FaceTemplate
from users.models import AttendanceRecord, AuditLogEntry, User, WorkSchedule


class ImageBytesField(serializers.Field):
    """Accept a multipart upload or a base64 string (optionally a ``data:`` URL).

    The validated value is the raw image bytes; decoding them into pixels is left
    to the configured image decoder.
    """

    default_error_messages = {
        "invalid": "Image must be an uploaded file or a base64-encoded string.",
        "empty": "Image must not be empty.",
    }

    def to_internal_value(self, data):
        if hasattr(data, "read"):
            payload = data.read()
        elif isinstance(data, str):
            encoded = data.split(",", 1)[1] if data.startswith("data:") else data
            try:
                payload = base64.b64decode(encoded.strip(), validate=True)
            except (binascii.Error, ValueError):
                self.fail("invalid")
        else:
            self.fail("invalid")
        if not payload:
            self.fail("empty")
        return payload

    def to_representation(self, value):
        raise NotImplementedError("Image payloads are write-only.")


class AttendanceRecordSerializer(serializers.ModelSerializer):
    """Attendance record as returned to clients; flagged records read as pending review."""

    status = serializers.CharField(source="display_status", read_only=True)
    review_status = serializers.CharField(source="status", read_only=True)
    username = serializers.CharField(source="user.username", read_only=True)
    approved_by = serializers.PrimaryKeyRelatedField(read_only=True)

    class Meta:
        model = AttendanceRecord
        fields = [
            "id",
            "user",
            "username",
            "type",
            "timestamp",
            "attendance_date",
            "latitude",
            "longitude",
            "location_address",
            "accuracy",
            "confidence_score",
            "liveness_passed",
            "status",
            "review_status",
            "rejection_reason",
            "approved_by",
            "approved_at",
            "is_offline",
            "synced_at",
            "created_at",
        ]
        read_only_fields = fields


class FaceTemplateSerializer(serializers.ModelSerializer):
    """Template metadata only; the encrypted encoding never leaves the store."""

    class Meta:
        model = FaceTemplate
        fields = ["id", "user", "template_hash", "quality_score", "is_primary", "created_at"]
        read_only_fields = fields


class AuditLogEntrySerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True, default=None)

    class Meta:
        model = AuditLogEntry
        fields = [
            "id",
            "actor",
            "actor_username",
            "action",
            "resource_type",
            "resource_id",
            "old_values",
            "new_values",
            "ip_address",
            "user_agent",
            "device_id",
            "severity",
            "description",
            "created_at",
        ]
        read_only_fields = fields


# --- Request payloads ---


class AttendanceSubmissionSerializer(serializers.Serializer):
    """Check-in / check-out payload.

    Coordinates are range-checked by the decision pipeline so invalid values are
    reported with the same error envelope as every other rejected submission.
    """

    image = ImageBytesField()
    latitude = serializers.FloatField(required=False, allow_null=True)
    longitude = serializers.FloatField(required=False, allow_null=True)
    accuracy = serializers.FloatField(required=False, allow_null=True, min_value=0)
    address = serializers.CharField(required=False, allow_blank=True, max_length=255)
    timestamp = serializers.DateTimeField(required=False, allow_null=True)
    device_metadata = serializers.DictField(required=False, default=dict)
    is_offline = serializers.BooleanField(required=False, default=False)

    def coordinates(self):
        data = self.validated_data
        return {
            "latitude": data.get("latitude"),
            "longitude": data.get("longitude"),
            "accuracy": data.get("accuracy"),
            "address": data.get("address", ""),
        }


class OfflineSubmissionSerializer(AttendanceSubmissionSerializer):
    type = serializers.ChoiceField(choices=AttendanceRecord.Type.choices)
    timestamp = serializers.DateTimeField()


class OfflineSyncSerializer(serializers.Serializer):
    submissions = OfflineSubmissionSerializer(many=True, allow_empty=False)

    def service_payload(self):
        return [
            {
                "image_bytes": item["image"],
                "coordinates": {
                    "latitude": item.get("latitude"),
                    "longitude": item.get("longitude"),
                    "accuracy": item.get("accuracy"),
                    "address": item.get("address", ""),
                },
                "timestamp": item["timestamp"],
                "device_metadata": item.get("device_metadata") or {},
                "type": item["type"],
            }
            for item in self.validated_data["submissions"]
        ]


class ReviewSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=1000)


class EnrollmentSerializer(serializers.Serializer):
    image = ImageBytesField()
    user_id = serializers.IntegerField(required=False)
    make_primary = serializers.BooleanField(required=False, default=False)


class VerificationSerializer(serializers.Serializer):
    image = ImageBytesField()
    user_id = serializers.IntegerField(required=False)


class WorkScheduleSerializer(serializers.ModelSerializer):
    class Meta:
        model = WorkSchedule
        fields = [
            "id",
            "user",
            "schedule_name",
            "start_time",
            "end_time",
            "working_days",
            "latitude",
            "longitude",
            "location_radius",
            "location_name",
            "is_active",
            "effective_from",
            "effective_to",
            "created_at",
        ]
        read_only_fields = fields


class WorkScheduleCreateSerializer(serializers.Serializer):
    user_id = serializers.IntegerField()
    schedule_name = serializers.CharField(max_length=100)
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()
    working_days = serializers.ListField(child=serializers.IntegerField(), allow_empty=False)
    latitude = serializers.DecimalField(
        max_digits=10, decimal_places=8, required=False, allow_null=True
    )
    longitude = serializers.DecimalField(
        max_digits=11, decimal_places=8, required=False, allow_null=True
    )
    location_radius = serializers.IntegerField(required=False, allow_null=True)
    location_name = serializers.CharField(required=False, allow_blank=True, max_length=255)
    effective_from = serializers.DateField(required=False, allow_null=True)
    effective_to = serializers.DateField(required=False, allow_null=True)


class UserStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=User.Status.choices)
    reason = serializers.CharField(required=False, allow_blank=True, max_length=1000)
