"""Synchronization and dispatch engine for an SMS/MMS gateway device."""

from __future__ import annotations

from .backoff import BackoffPolicy, GiveUp, Retry
from .client import GatewayClient
from .content import ContentProvider
from .dispatch import DispatchPipeline
from .inbox import InboxSyncEngine
from .messages import MessageStore
from .registration import RegistrationStateMachine
from .service import GatewayService

__all__ = [
    "BackoffPolicy",
    "ContentProvider",
    "DispatchPipeline",
    "GatewayClient",
    "GatewayService",
    "GiveUp",
    "InboxSyncEngine",
    "MessageStore",
    "RegistrationStateMachine",
    "Retry",
]
