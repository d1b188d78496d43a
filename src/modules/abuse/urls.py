"""Abuse admin URL configuration."""

from __future__ import annotations

from rest_framework.routers import DefaultRouter

from modules.abuse.views import AllowlistViewSet, BlockViewSet

router = DefaultRouter(trailing_slash=True)
router.register("abuse/blocks", BlockViewSet, basename="abuse-block")
router.register("abuse/allowlist", AllowlistViewSet, basename="abuse-allowlist")

urlpatterns = router.urls
