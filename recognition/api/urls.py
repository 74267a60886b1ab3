from django.urls import include, path

from rest_framework.routers import DefaultRouter
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView, TokenVerifyView

from .views import (
    AdminFeedView,
    AttendanceViewSet,
    AuditLogListView,
    FaceEnrollView,
    FaceTemplatePrimaryView,
    FaceTemplateView,
    FaceVerifyView,
    UserStatusView,
    WorkScheduleCreateView,
)

router = DefaultRouter()
router.register(r"attendance", AttendanceViewSet, basename="attendance")

urlpatterns = [
    # Auth endpoints
    path("auth/login/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("auth/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("auth/verify/", TokenVerifyView.as_view(), name="token_verify"),
    # Face template endpoints
    path("face/enroll/", FaceEnrollView.as_view(), name="face-enroll"),
    path("face/verify/", FaceVerifyView.as_view(), name="face-verify"),
    path("face/templates/<int:pk>/", FaceTemplateView.as_view(), name="face-templates"),
    path(
        "face/templates/<int:pk>/primary/",
        FaceTemplatePrimaryView.as_view(),
        name="face-template-primary",
    ),
    # Admin endpoints
    path("admin/feed/", AdminFeedView.as_view(), name="admin-feed"),
    path("admin/audit-logs/", AuditLogListView.as_view(), name="admin-audit-logs"),
    path("admin/work-schedules/", WorkScheduleCreateView.as_view(), name="admin-work-schedules"),
    path("admin/users/<int:pk>/status/", UserStatusView.as_view(), name="admin-user-status"),
    # Router endpoints
    path("", include(router.urls)),
]
