"""Connector contract shared by every upstream source.

A connector knows one upstream API: how to fetch a page of raw records for a
partition and how to map each raw record to a ``CanonicalRecord``. Mapping is
pure; a raw record without its identity fields raises ``MappingError`` and is
dropped by the caller.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import UTC, datetime
import json
import logging
import time
from typing import Any

import httpx

from dataflood.rate_limit import RateLimiter
from dataflood.schemas import CanonicalRecord, Page, Partition, SourceDescriptor


logger = logging.getLogger(__name__)

DESCRIPTION_LIMIT = 5000


class MappingError(ValueError):
    pass


class Connector(ABC):
    descriptor: SourceDescriptor

    def __init__(self, descriptor: SourceDescriptor, client: httpx.Client, limiter: RateLimiter | None = None) -> None:
        self.descriptor = descriptor
        self.client = client
        self.limiter = limiter or RateLimiter(
            descriptor.source_id,
            delay_seconds=descriptor.request_delay_seconds,
        )
        self.api_key: str | None = None

    @property
    def source_id(self) -> str:
        return self.descriptor.source_id

    def partitions(self) -> list[Partition]:
        return [
            Partition(source_id=self.source_id, key=key, priority=index)
            for index, key in enumerate(self.descriptor.partitions)
        ]

    @abstractmethod
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        """Fetch one page; ``cursor`` is None for the first page."""

    @abstractmethod
    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        """Map a raw upstream record; raises MappingError when identity fields are missing."""

    def to_canonical(self, raw: Any) -> CanonicalRecord:
        """``map`` with any shape error on a malformed payload reported as ``MappingError``."""
        try:
            return self.map(raw)
        except MappingError:
            raise
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as exc:
            raise MappingError(f"malformed record: {type(exc).__name__}: {exc}") from exc

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        timeout = self.descriptor.timeout_seconds
        with self.limiter.slot():
            # httpx timeouts are per phase; the whole call gets one deadline on top.
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.source_id}-request")
            future = executor.submit(self._send, method, url, time.monotonic() + timeout, kwargs)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError:
                future.cancel()
                raise httpx.TimeoutException(f"no complete response within {timeout}s from {url}") from None
            finally:
                executor.shutdown(wait=False, cancel_futures=True)

    def _send(self, method: str, url: str, deadline: float, kwargs: dict[str, Any]) -> Any:
        with self.client.stream(method, url, timeout=self.descriptor.timeout_seconds, **kwargs) as response:
            response.raise_for_status()
            body = bytearray()
            for chunk in response.iter_bytes():
                if time.monotonic() > deadline:
                    # Stop a trickling body once the caller has given up on it.
                    raise httpx.TimeoutException(f"response body from {url} exceeded deadline")
                body.extend(chunk)
        return json.loads(body)

    def _next_cursor(self, page_number: int, returned: int) -> int | None:
        # A short page is the last page.
        if returned < self.descriptor.page_size or page_number + 1 >= self.descriptor.max_pages:
            return None
        return page_number + 1

    def _record(
        self,
        entity_kind: str,
        natural_key: tuple[str, ...],
        fields: dict[str, object],
        source_updated_at: datetime | None = None,
    ) -> CanonicalRecord:
        return CanonicalRecord(
            entity_kind=entity_kind,
            natural_key=natural_key,
            fields={name: value for name, value in fields.items() if value not in (None, "")},
            source=self.source_id,
            source_updated_at=source_updated_at,
        )


def require(raw: dict[str, Any], *names: str) -> tuple[str, ...]:
    """Return the named identity fields as stripped strings or raise MappingError."""
    values = []
    for name in names:
        value = raw.get(name)
        text = str(value).strip() if value is not None else ""
        if not text:
            raise MappingError(f"missing identity field '{name}'")
        values.append(text)
    return tuple(values)


def to_amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def truncate(value: Any, limit: int = DESCRIPTION_LIMIT) -> str | None:
    if value is None:
        return None
    return str(value)[:limit]


def parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).strip().replace("Z", "+00:00")
    for parser in (datetime.fromisoformat, _parse_us_date):
        try:
            parsed = parser(text)
        except ValueError:
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(UTC)
        return parsed.replace(tzinfo=None)
    logger.debug("unparseable timestamp", extra={"value": text})
    return None


def _parse_us_date(text: str) -> datetime:
    return datetime.strptime(text, "%m/%d/%Y")
