"""
Background Job Queue

Lease-based deferred job execution with at-least-once delivery, per-type
handlers with timeout and retry/backoff, push-notification delivery and
aggregate statistics for an admin dashboard.
"""

__version__ = "1.0.0"
