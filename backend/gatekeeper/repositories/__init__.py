"""Data access repositories."""

from gatekeeper.repositories.subscriber_repository import SubscriberRepository

__all__ = ["SubscriberRepository"]
