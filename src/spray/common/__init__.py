"""Shared building blocks: settings, observability, metrics and HTTP guards."""
