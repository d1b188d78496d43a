"""Shipping domain exceptions."""

from __future__ import annotations

from typing import Optional


class CarrierError(Exception):
    """Base class for carrier integration failures."""


class CarrierAuthError(CarrierError):
    """Carrier credentials are missing or were rejected."""


class CarrierRequestError(CarrierError):
    """A carrier API call failed.

    ``status_code`` is ``None`` for network-level failures (timeouts,
    connection resets); those and 5xx answers are worth retrying.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class AwbAssignmentError(CarrierError):
    """The carrier answered but did not assign an AWB."""


class ShipmentNotReady(Exception):
    """The order is not in a state that allows this shipping step."""


class LabelGenerationFailed(Exception):
    """Label could not be produced; nothing downstream was attempted."""


class ManifestGenerationFailed(Exception):
    """Label exists but the manifest batch could not be generated."""
