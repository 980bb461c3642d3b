"""Entitlement lifecycle services: billing event ingestion and license verification."""
