"""
Main URL configuration for the Biometric Attendance service.

The JSON API lives under ``/api/v1/``; Prometheus scrapes ``/metrics/``.
"""

from django.contrib import admin
from django.urls import include, path

from recognition.api.views import MetricsView

urlpatterns = [
    # API V1
    path("api/v1/", include("recognition.api.urls")),
    path("metrics/", MetricsView.as_view(), name="monitoring-metrics"),
    # Django admin
    path("admin/", admin.site.urls),
]
