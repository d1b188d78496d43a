"""Shipping URL configuration."""

from __future__ import annotations

from django.urls import path
from rest_framework.routers import DefaultRouter

from modules.shipping.views import CarrierWebhookView, ShipmentViewSet

router = DefaultRouter(trailing_slash=True)
router.register("shipments", ShipmentViewSet, basename="shipment")

urlpatterns = [
    path("shipments/webhook/", CarrierWebhookView.as_view(), name="carrier-webhook"),
    *router.urls,
]
