"""Client Directory collaborators: read-only lookup of billing parties by id."""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable

import httpx

from billing_engine.core.config import settings
from billing_engine.core.errors import StorageError

logger = logging.getLogger(__name__)


class ClientDirectory(ABC):
    """Resolves client references owned by an external system."""

    @abstractmethod
    def client_exists(self, client_id: str) -> bool:
        """Return True if ``client_id`` resolves to a billing party."""
        pass  # pragma: no cover


class InMemoryClientDirectory(ClientDirectory):
    def __init__(self, client_ids: Iterable[str] = ()):
        self._client_ids = set(client_ids)

    def add(self, client_id: str) -> None:
        self._client_ids.add(client_id)

    def remove(self, client_id: str) -> None:
        self._client_ids.discard(client_id)

    def client_exists(self, client_id: str) -> bool:
        return client_id in self._client_ids


class AllowAllClientDirectory(ClientDirectory):
    """Directory used when no external directory is configured."""

    def client_exists(self, client_id: str) -> bool:
        return bool(client_id)


class HttpClientDirectory(ClientDirectory):
    """Looks clients up over HTTP at ``GET {base_url}/clients/{client_id}``.

    Positive answers are cached for ``cache_seconds``; a missing client is
    always re-checked so a newly created client resolves immediately.
    """

    def __init__(
        self,
        base_url: str,
        cache_seconds: int | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache_seconds = (
            cache_seconds if cache_seconds is not None else settings.client_directory_cache_seconds
        )
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._cache: dict[str, float] = {}

    def client_exists(self, client_id: str) -> bool:
        cached_until = self._cache.get(client_id)
        if cached_until is not None and cached_until > self._clock():
            return True

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.get(f"{self.base_url}/clients/{client_id}")
        except httpx.HTTPError as exc:
            logger.warning("Client directory lookup failed for %s: %s", client_id, exc)
            raise StorageError("Client directory unavailable", client_id=client_id) from exc

        if resp.status_code == 404:
            self._cache.pop(client_id, None)
            return False
        if resp.status_code >= 400:
            raise StorageError(
                f"Client directory returned HTTP {resp.status_code}",
                client_id=client_id,
            )

        self._cache[client_id] = self._clock() + self.cache_seconds
        return True


def get_client_directory() -> ClientDirectory:
    """Build the directory configured in settings."""
    if settings.client_directory_url:
        return HttpClientDirectory(settings.client_directory_url)
    return AllowAllClientDirectory()
