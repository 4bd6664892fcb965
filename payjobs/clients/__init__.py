"""Collaborator adapters."""

from .http import HttpNotificationService, HttpPaymentGateway

__all__ = ["HttpNotificationService", "HttpPaymentGateway"]
