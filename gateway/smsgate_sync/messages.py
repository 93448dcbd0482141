"""Interface to the local message store the dispatch pipeline feeds."""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import LocalSendState, ProcessingOrder, SendRequest


class MessageStore(ABC):
    """Local outbound message store.

    ``enqueue_send_request`` hands the request to the local sender and
    returns immediately; it must not wait for delivery.
    """

    @abstractmethod
    def enqueue_send_request(self, request: SendRequest) -> None: ...

    @abstractmethod
    def get_send_state(self, message_id: str) -> LocalSendState | None: ...

    @abstractmethod
    def get_processing_order(self) -> ProcessingOrder: ...
