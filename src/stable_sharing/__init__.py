"""Consent-scoped horse record sharing service."""

from .main import create_app
from .settings import SharingSettings

__all__ = ["create_app", "SharingSettings"]
