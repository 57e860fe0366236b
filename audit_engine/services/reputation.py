"""
IP reputation lookups.

The oracle is external and may be slow or down. Every lookup
runs with a hard timeout; a lookup that does not answer in time
raises UpstreamTimeout so the caller can continue on local
signals only.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from functools import lru_cache
from typing import Protocol

import httpx

from audit_engine.config import get_settings
from audit_engine.errors import UpstreamTimeout

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="reputation")


class ReputationOracle(Protocol):
    def is_denylisted(self, ip_address: str) -> bool:
        ...


class StaticReputationOracle:
    """Oracle backed by a fixed denylist."""

    def __init__(self, denylist: set[str] | frozenset[str] = frozenset()):
        self.denylist = frozenset(denylist)

    def is_denylisted(self, ip_address: str) -> bool:
        return ip_address in self.denylist


class HttpReputationOracle:
    """
    Oracle backed by an HTTP reputation service.

    Expects `GET {base_url}/ip/{address}` to answer with
    `{"denylisted": true|false}`.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client = httpx.Client(
            base_url=base_url, timeout=timeout, transport=transport
        )

    def is_denylisted(self, ip_address: str) -> bool:
        try:
            response = self.client.get(f"/ip/{ip_address}")
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(
                f"reputation lookup for {ip_address} timed out"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamTimeout(
                f"reputation service unreachable for {ip_address}: {e}"
            ) from e
        try:
            return bool(response.json().get("denylisted", False))
        except (ValueError, AttributeError) as e:
            raise UpstreamTimeout(
                f"reputation service sent an unreadable answer for {ip_address}"
            ) from e


def lookup(oracle: ReputationOracle, ip_address: str, timeout: float) -> bool:
    """Ask the oracle about one address, giving up after `timeout` seconds."""
    future = _executor.submit(oracle.is_denylisted, ip_address)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as e:
        future.cancel()
        raise UpstreamTimeout(
            f"reputation lookup for {ip_address} exceeded {timeout}s"
        ) from e


@lru_cache()
def default_oracle() -> ReputationOracle:
    settings = get_settings()
    if settings.REPUTATION_URL:
        return HttpReputationOracle(
            settings.REPUTATION_URL, settings.REPUTATION_TIMEOUT_SECONDS
        )
    return StaticReputationOracle(settings.DENYLISTED_IPS)
