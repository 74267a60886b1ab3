"""REST endpoints for attendance submission, review and face template management.

Views stay thin: they validate the payload shape, build the request context and
delegate to the :class:`~recognition.services.AttendanceService` built at startup.
"""

from django.http import HttpResponse

from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.generics import ListAPIView
from rest_framework.response import Response
from rest_framework.views import APIView

from recognition import monitoring, tasks
from recognition.apps import get_attendance_service
from recognition.audit import RequestContext
from recognition.errors import NotPermitted
from recognition.notifications import ADMIN_TOPIC
from recognition.review import APPROVE, REJECT
from recognition.telemetry import bind_request_to_scope
from users.models import AttendanceRecord, AuditLogEntry

from .permissions import IsAdmin, IsSuperAdmin
from .ratelimit import attendance_rate_limited
from .serializers import (
    AttendanceRecordSerializer,
    AttendanceSubmissionSerializer,
    AuditLogEntrySerializer,
    EnrollmentSerializer,
    FaceTemplateSerializer,
    OfflineSyncSerializer,
    ReviewSerializer,
    UserStatusSerializer,
    VerificationSerializer,
    WorkScheduleCreateSerializer,
    WorkScheduleSerializer,
)


def _context(request) -> RequestContext:
    return RequestContext.from_request(request)


def _target_user_id(request, requested_id):
    """Resolve whose face is checked; only admins may verify other users."""

    if requested_id is None or requested_id == request.user.pk:
        return request.user.pk
    if not request.user.is_admin:
        raise NotPermitted("Only administrators may verify another user's face.")
    return requested_id


class AttendanceViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Attendance history plus the check-in / check-out / review actions.
    """

    serializer_class = AttendanceRecordSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        user = self.request.user
        queryset = AttendanceRecord.objects.select_related("user").order_by("-timestamp")

        if not user.is_admin:
            queryset = queryset.filter(user=user)
        else:
            user_id = self.request.query_params.get("user_id")
            if user_id:
                queryset = queryset.filter(user_id=user_id)

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        record_status = self.request.query_params.get("status")
        record_type = self.request.query_params.get("type")

        if start_date:
            queryset = queryset.filter(attendance_date__gte=start_date)
        if end_date:
            queryset = queryset.filter(attendance_date__lte=end_date)
        if record_status:
            if record_status == "pending review":
                record_status = AttendanceRecord.Status.FLAGGED
            queryset = queryset.filter(status=record_status)
        if record_type:
            queryset = queryset.filter(type=record_type)

        return queryset

    def _submit(self, request, attendance_type):
        serializer = AttendanceSubmissionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        bind_request_to_scope(
            request,
            flow="attendance",
            extra={"type": attendance_type, "offline": data["is_offline"]},
        )

        record = get_attendance_service().submit_attendance(
            request.user.pk,
            data["image"],
            serializer.coordinates(),
            data.get("timestamp"),
            data.get("device_metadata"),
            is_offline=data["is_offline"],
            attendance_type=attendance_type,
            context=_context(request),
        )
        if record.status == AttendanceRecord.Status.FLAGGED:
            message = "Attendance recorded and sent for review."
        elif attendance_type == AttendanceRecord.Type.CHECK_IN:
            message = "Check-in successful."
        else:
            message = "Check-out successful."
        return Response(
            {
                "success": True,
                "message": message,
                "data": AttendanceRecordSerializer(record).data,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=False, methods=["post"], url_path="check-in")
    @attendance_rate_limited
    def check_in(self, request):
        return self._submit(request, AttendanceRecord.Type.CHECK_IN)

    @action(detail=False, methods=["post"], url_path="check-out")
    @attendance_rate_limited
    def check_out(self, request):
        return self._submit(request, AttendanceRecord.Type.CHECK_OUT)

    @action(detail=False, methods=["post"])
    def sync(self, request):
        """Replay submissions captured while the device was offline."""

        serializer = OfflineSyncSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        bind_request_to_scope(request, flow="offline_sync")

        outcomes = get_attendance_service().sync_offline(
            request.user.pk, serializer.service_payload(), context=_context(request)
        )
        return Response(
            {
                "success": True,
                "data": {
                    "synced": sum(1 for outcome in outcomes if outcome.error is None),
                    "results": [outcome.as_dict() for outcome in outcomes],
                },
            }
        )

    @action(detail=False, methods=["get"])
    def today(self, request):
        summary = get_attendance_service().today_status(request.user.pk)
        return Response(
            {
                "success": True,
                "data": {
                    "date": summary["date"].isoformat(),
                    "status": summary["status"],
                    "check_in": (
                        AttendanceRecordSerializer(summary["check_in"]).data
                        if summary["check_in"]
                        else None
                    ),
                    "check_out": (
                        AttendanceRecordSerializer(summary["check_out"]).data
                        if summary["check_out"]
                        else None
                    ),
                },
            }
        )

    def _review(self, request, pk, decision):
        serializer = ReviewSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        bind_request_to_scope(request, flow="attendance_review", extra={"decision": decision})

        record = get_attendance_service().review_attendance(
            pk,
            request.user.pk,
            decision,
            serializer.validated_data.get("reason"),
            context=_context(request),
        )
        return Response({"success": True, "data": AttendanceRecordSerializer(record).data})

    @action(detail=True, methods=["post"], permission_classes=[IsAdmin])
    def approve(self, request, pk=None):
        return self._review(request, pk, APPROVE)

    @action(detail=True, methods=["post"], permission_classes=[IsAdmin])
    def reject(self, request, pk=None):
        return self._review(request, pk, REJECT)


class FaceEnrollView(APIView):
    """Register a face template for a user; enrollment is an administrator task."""

    permission_classes = [IsAdmin]

    @attendance_rate_limited
    def post(self, request):
        serializer = EnrollmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        user_id = data.get("user_id") or request.user.pk
        bind_request_to_scope(request, flow="face_enrollment", extra={"target_user": user_id})

        template = get_attendance_service().enroll_template(
            user_id,
            data["image"],
            make_primary=data["make_primary"],
            actor=request.user,
            context=_context(request),
        )
        return Response(
            {
                "success": True,
                "message": "Face template registered.",
                "data": FaceTemplateSerializer(template).data,
            },
            status=status.HTTP_201_CREATED,
        )


class FaceVerifyView(APIView):
    def post(self, request):
        serializer = VerificationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        user_id = _target_user_id(request, data.get("user_id"))

        result = get_attendance_service().verify_identity(
            user_id, data["image"], actor=request.user, context=_context(request)
        )
        return Response({"success": True, "data": result.as_dict()})


class FaceTemplateView(APIView):
    """``GET`` lists the templates of user ``pk``; ``DELETE`` removes template ``pk``."""

    permission_classes = [IsAdmin]

    def get(self, request, pk):
        templates = get_attendance_service().list_templates(pk)
        return Response(
            {"success": True, "data": FaceTemplateSerializer(templates, many=True).data}
        )

    def delete(self, request, pk):
        get_attendance_service().delete_template(pk, actor=request.user, context=_context(request))
        return Response(status=status.HTTP_204_NO_CONTENT)


class FaceTemplatePrimaryView(APIView):
    permission_classes = [IsAdmin]

    def post(self, request, pk):
        template = get_attendance_service().set_primary_template(
            pk, actor=request.user, context=_context(request)
        )
        return Response({"success": True, "data": FaceTemplateSerializer(template).data})


class AdminFeedView(APIView):
    """Recent attendance events published on the admin topic."""

    permission_classes = [IsAdmin]

    def get(self, request):
        try:
            limit = int(request.query_params.get("limit", 50))
        except ValueError:
            limit = 50
        return Response({"success": True, "data": tasks.recent_events(ADMIN_TOPIC, limit)})


class WorkScheduleCreateView(APIView):
    permission_classes = [IsAdmin]

    def post(self, request):
        serializer = WorkScheduleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        fields = dict(serializer.validated_data)
        user_id = fields.pop("user_id")

        schedule = get_attendance_service().create_work_schedule(
            request.user.pk, user_id, context=_context(request), **fields
        )
        return Response(
            {
                "success": True,
                "message": "Work schedule created.",
                "data": WorkScheduleSerializer(schedule).data,
            },
            status=status.HTTP_201_CREATED,
        )


class UserStatusView(APIView):
    """Activate, deactivate or suspend user ``pk``."""

    permission_classes = [IsAdmin]

    def put(self, request, pk):
        serializer = UserStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user = get_attendance_service().change_user_status(
            pk,
            request.user.pk,
            serializer.validated_data["status"],
            serializer.validated_data.get("reason"),
            context=_context(request),
        )
        return Response({"success": True, "data": {"id": user.pk, "status": user.status}})


class AuditLogListView(ListAPIView):
    serializer_class = AuditLogEntrySerializer
    permission_classes = [IsSuperAdmin]

    def get_queryset(self):
        queryset = AuditLogEntry.objects.select_related("actor")
        params = self.request.query_params
        if params.get("action"):
            queryset = queryset.filter(action=params["action"])
        if params.get("severity"):
            queryset = queryset.filter(severity=params["severity"])
        if params.get("actor"):
            queryset = queryset.filter(actor_id=params["actor"])
        if params.get("resource_type"):
            queryset = queryset.filter(resource_type=params["resource_type"])
        if params.get("resource_id"):
            queryset = queryset.filter(resource_id=params["resource_id"])
        return queryset


class MetricsView(APIView):
    """Expose Prometheus metrics for the attendance services."""

    permission_classes = [IsAdmin]

    def get(self, request):
        payload = monitoring.export_metrics()
        return HttpResponse(payload, content_type=monitoring.prometheus_content_type())
