"""
Core module for the PopThread coordinator.

This module contains the infrastructure the service managers build on:
- Entity store (database sessions, queries, per-entity locks)
- Clock and expiry scheduling
- Realtime fan-out and push server
- Password credentials
- Error taxonomy and handling
"""

__version__ = "0.1.0"

from core.clock import Clock, ManualClock, utcnow
from core.error_handler import (
    ErrorCategory,
    ErrorHandler,
    PopThreadError,
    NotFoundError,
    ForbiddenError,
    ConflictError,
    ExpiredError,
    ValidationError,
    TransientStoreError,
)
from core.fanout import Event, EventType, RealtimeFanout, Subscription, SubscriptionClosed

__all__ = [
    'Clock',
    'ManualClock',
    'utcnow',
    'ErrorCategory',
    'ErrorHandler',
    'PopThreadError',
    'NotFoundError',
    'ForbiddenError',
    'ConflictError',
    'ExpiredError',
    'ValidationError',
    'TransientStoreError',
    'Event',
    'EventType',
    'RealtimeFanout',
    'Subscription',
    'SubscriptionClosed',
]
