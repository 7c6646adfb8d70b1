# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Background refresh of the certificate, rule and value-set snapshots.

Each store gets one :class:`SnapshotRefresher`: an asyncio task that
calls a loader on a fixed interval and swaps the store's snapshot with
the loaded one.

Refresh rules:

* Runs never overlap.  A tick that finds the previous refresh still
  holding the lock is skipped.
* A refresh that exceeds ``lock_limit`` seconds is cancelled.
* A failed or cancelled refresh keeps the previous snapshot; validation
  keeps working on slightly stale data.

The loaders here download from the DCC gateway with ``httpx`` and parse
the gateway JSON formats into store snapshots.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from cryptography import x509

from app.config import GATEWAY_TIMEOUT_SECONDS
from app.dcc.exceptions import GatewayFetchError
from app.dcc.providers import SnapshotStore
from app.dcc.rules import Rule

logger = logging.getLogger("dcc.refresh")

__all__ = [
    "SnapshotRefresher",
    "fetch_gateway_json",
    "gateway_loader",
    "parse_rules",
    "parse_signer_certificates",
    "parse_value_sets",
]

Loader = Callable[[], Awaitable[Any]]


# ======================================================================
# Gateway download and parsing
# ======================================================================


async def fetch_gateway_json(url: str, timeout: float = GATEWAY_TIMEOUT_SECONDS) -> Any:
    """GET *url* and return the decoded JSON body.

    Raises
    ------
    GatewayFetchError
        On network errors, non-2xx responses or invalid JSON.
    """
    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        ) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
    except httpx.TimeoutException as exc:
        raise GatewayFetchError(f"Gateway fetch timed out after {timeout}s for {url}") from exc
    except httpx.HTTPError as exc:
        raise GatewayFetchError(f"HTTP error fetching {url}: {exc}") from exc

    if response.status_code < 200 or response.status_code >= 300:
        raise GatewayFetchError(f"Gateway fetch returned HTTP {response.status_code} for {url}")

    try:
        return response.json()
    except ValueError as exc:
        raise GatewayFetchError(f"Gateway response from {url} is not JSON: {exc}") from exc


def parse_signer_certificates(data: Any) -> Dict[str, List[x509.Certificate]]:
    """Parse ``[{"kid": ..., "rawData": <base64 DER>}]`` into kid → certificates.

    Entries that fail to parse are skipped with a warning.
    """
    if not isinstance(data, list):
        raise GatewayFetchError("signer certificate list must be a JSON array")
    certificates: Dict[str, List[x509.Certificate]] = defaultdict(list)
    for entry in data:
        try:
            kid = entry["kid"]
            certificate = x509.load_der_x509_certificate(base64.b64decode(entry["rawData"]))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping unparseable signer certificate entry: %s", exc)
            continue
        certificates[kid].append(certificate)
    return dict(certificates)


def parse_value_sets(data: Any) -> Dict[str, List[str]]:
    """Parse gateway value sets into value-set id → list of codes."""
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise GatewayFetchError("value sets must be a JSON object or array")
    value_sets: Dict[str, List[str]] = {}
    for entry in data:
        if not isinstance(entry, dict) or "valueSetId" not in entry:
            logger.warning("Skipping value set entry without valueSetId")
            continue
        value_sets[entry["valueSetId"]] = list((entry.get("valueSetValues") or {}).keys())
    return value_sets


def parse_rules(data: Any) -> Dict[str, List[Rule]]:
    """Parse a list of CertLogic rules into country code → rules."""
    if not isinstance(data, list):
        raise GatewayFetchError("rule list must be a JSON array")
    rules: Dict[str, List[Rule]] = defaultdict(list)
    for entry in data:
        try:
            rule = Rule.from_json(entry)
        except (KeyError, TypeError, AttributeError) as exc:
            logger.warning("Skipping unparseable rule entry: %s", exc)
            continue
        if not rule.country_code:
            logger.warning("Skipping rule %s without country", rule.identifier)
            continue
        rules[rule.country_code.upper()].append(rule)
    return dict(rules)


def gateway_loader(url: str, parser: Callable[[Any], Any]) -> Loader:
    """Build a loader that downloads *url* and parses it with *parser*."""

    async def _load() -> Any:
        return parser(await fetch_gateway_json(url))

    return _load


# ======================================================================
# SnapshotRefresher
# ======================================================================


class SnapshotRefresher:
    """Periodically reloads one :class:`SnapshotStore`.

    Parameters
    ----------
    store : SnapshotStore
        The store whose snapshot is replaced on success.
    loader : async callable
        Returns the new snapshot.
    interval : float
        Seconds between refresh attempts.
    lock_limit : float
        Maximum seconds one refresh may run before it is cancelled.
    """

    def __init__(
        self,
        store: SnapshotStore,
        loader: Loader,
        interval: float,
        lock_limit: float,
    ) -> None:
        self._store = store
        self._loader = loader
        self._interval = interval
        self._lock_limit = lock_limit

        self._lock = asyncio.Lock()
        self._running: bool = False
        self._task: Optional[asyncio.Task] = None
        self.last_success: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def name(self) -> str:
        return self._store.name

    async def refresh(self) -> bool:
        """Run one refresh now.

        Returns ``True`` if the snapshot was replaced, ``False`` if the
        refresh failed or another refresh was already in progress.
        """
        if self._lock.locked():
            logger.info("%s refresh already in progress; skipping", self.name)
            return False

        async with self._lock:
            try:
                snapshot = await asyncio.wait_for(self._loader(), timeout=self._lock_limit)
            except asyncio.TimeoutError:
                self.last_error = f"refresh exceeded lock limit of {self._lock_limit}s"
                logger.warning("%s %s; keeping previous snapshot", self.name, self.last_error)
                return False
            except Exception as exc:
                self.last_error = str(exc)
                logger.warning("%s refresh failed: %s; keeping previous snapshot", self.name, exc)
                return False

            self._store.replace(snapshot)
            self.last_success = time.time()
            self.last_error = None
            return True

    async def start(self) -> None:
        """Start the background task.  Idempotent."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._worker())
        logger.info("%s refresher started (interval=%ss)", self.name, self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s refresher stopped", self.name)

    def stats(self) -> Dict[str, Any]:
        return {
            **self._store.stats(),
            "last_success": self.last_success,
            "last_error": self.last_error,
        }

    async def _worker(self) -> None:
        while self._running:
            await self.refresh()
            await asyncio.sleep(self._interval)
