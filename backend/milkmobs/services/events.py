"""Completion event delivery to external subscribers.

Delivery is at-least-once; subscribers must be idempotent on the item id.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Sequence

import httpx

from milkmobs.pipeline.errors import InfraError
from milkmobs.pipeline.types import CompletionEvent

logger = logging.getLogger(__name__)
WEBHOOK_HTTP_TIMEOUT_SECONDS = 10.0


class EventSink(ABC):
    """Receives pipeline completion events."""

    @abstractmethod
    async def emit(self, event: CompletionEvent) -> None:
        """Deliver one event."""


class LoggingEventSink(EventSink):
    """Writes events to the log."""

    async def emit(self, event: CompletionEvent) -> None:
        logger.info(f"Pipeline completed: {event.to_dict()}")


class WebhookEventSink(EventSink):
    """POSTs events as JSON to a subscriber URL."""

    def __init__(self, url: str, timeout: float = WEBHOOK_HTTP_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    async def emit(self, event: CompletionEvent) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=event.to_dict())
        except httpx.HTTPError as e:
            raise InfraError(f"Webhook {self.url} failed: {e}", "emit") from e
        if response.status_code >= 400:
            raise InfraError(f"Webhook {self.url} returned {response.status_code}", "emit")


class FanoutEventSink(EventSink):
    """Delivers each event to every subscriber concurrently."""

    def __init__(self, sinks: Sequence[EventSink]):
        self.sinks: List[EventSink] = list(sinks)

    async def emit(self, event: CompletionEvent) -> None:
        if not self.sinks:
            return
        results = await asyncio.gather(
            *(sink.emit(event) for sink in self.sinks),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, Exception):
                raise failure
        if failures:
            # The caller retries the whole event; subscribers dedupe on id
            raise InfraError(
                f"{len(failures)}/{len(self.sinks)} subscribers failed: {failures[0]}", "emit"
            )


def build_event_sink(webhook_urls: Sequence[str]) -> EventSink:
    """Logging sink plus one webhook sink per configured URL."""
    sinks: List[EventSink] = [LoggingEventSink()]
    sinks.extend(WebhookEventSink(url) for url in webhook_urls)
    return FanoutEventSink(sinks)
