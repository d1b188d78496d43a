"""Payment URL configuration."""

from __future__ import annotations

from django.urls import path
from rest_framework.routers import DefaultRouter

from modules.payments.views import PaymentViewSet, PaymentWebhookView, RefundRetryView

router = DefaultRouter(trailing_slash=True)
router.register("payments", PaymentViewSet, basename="payment")

urlpatterns = [
    path("payments/webhook/", PaymentWebhookView.as_view(), name="payment-webhook"),
    path(
        "payments/refunds/<uuid:order_id>/retry/",
        RefundRetryView.as_view(),
        name="refund-retry",
    ),
    *router.urls,
]
