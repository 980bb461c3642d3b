"""
Subscriber entitlement verification and access gating.

Billing provider events, license verification polls and per-request
enforcement all resolve against the same subscriber records.
"""

__version__ = "1.0.0"
