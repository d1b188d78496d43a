"""Privacy URL configuration."""

from __future__ import annotations

from django.urls import path

from modules.retention.views import ErasureCancelView, ErasureRequestView

urlpatterns = [
    path("privacy/erasure/", ErasureRequestView.as_view(), name="privacy-erasure"),
    path(
        "privacy/erasure/cancel/",
        ErasureCancelView.as_view(),
        name="privacy-erasure-cancel",
    ),
]
