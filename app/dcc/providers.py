# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Point-in-time lookup stores for signer certificates, rules and value sets.

Each store holds one immutable snapshot that is replaced wholesale by the
background refreshers in :mod:`app.dcc.refresh`.  Readers always see a
complete snapshot, never a half-applied refresh.  An empty snapshot is a
normal state (nothing downloaded yet) and yields empty lookups.

The validator depends only on the three provider protocols, so tests and
embedders can pass any object with the matching lookup method.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Generic, List, Mapping, Optional, Protocol, Sequence, TypeVar

from app.dcc.rules import Rule

logger = logging.getLogger("dcc.providers")

__all__ = [
    "CertificateProvider",
    "CertificateStore",
    "RulesProvider",
    "RulesStore",
    "SnapshotStore",
    "ValueSetProvider",
    "ValueSetStore",
]

T = TypeVar("T")


class CertificateProvider(Protocol):
    def certificates_for_kid(self, kid_b64: str) -> List[Any]: ...


class RulesProvider(Protocol):
    def rules_for_country(self, country_code: Optional[str]) -> List[Rule]: ...


class ValueSetProvider(Protocol):
    def value_sets(self) -> Dict[str, List[str]]: ...


class SnapshotStore(Generic[T]):
    """Holds one snapshot and swaps it atomically."""

    def __init__(self, name: str, initial: T):
        self.name = name
        self._snapshot = initial
        self._lock = threading.Lock()
        self._updated_at: Optional[float] = None

    def snapshot(self) -> T:
        with self._lock:
            return self._snapshot

    def replace(self, snapshot: T) -> None:
        with self._lock:
            self._snapshot = snapshot
            self._updated_at = time.time()
        logger.info("%s snapshot replaced (%d entries)", self.name, self._size(snapshot))

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"entries": self._size(self._snapshot), "updated_at": self._updated_at}

    @staticmethod
    def _size(snapshot: Any) -> int:
        return len(snapshot) if hasattr(snapshot, "__len__") else 0


class CertificateStore(SnapshotStore[Mapping[str, Sequence[Any]]]):
    """Signer certificates keyed by base64 key identifier.

    Candidate order within one kid is the order the gateway delivered.
    """

    def __init__(self, certificates: Optional[Mapping[str, Sequence[Any]]] = None):
        super().__init__("signer-certificates", dict(certificates or {}))

    def certificates_for_kid(self, kid_b64: str) -> List[Any]:
        return list(self.snapshot().get(kid_b64, ()))


class RulesStore(SnapshotStore[Mapping[str, Sequence[Rule]]]):
    """Business rules keyed by country code."""

    def __init__(self, rules: Optional[Mapping[str, Sequence[Rule]]] = None):
        super().__init__("business-rules", dict(rules or {}))

    def rules_for_country(self, country_code: Optional[str]) -> List[Rule]:
        if not country_code:
            return []
        return list(self.snapshot().get(country_code.upper(), ()))


class ValueSetStore(SnapshotStore[Mapping[str, Sequence[str]]]):
    """Value-set id to the list of codes it contains."""

    def __init__(self, value_sets: Optional[Mapping[str, Sequence[str]]] = None):
        super().__init__("value-sets", dict(value_sets or {}))

    def value_sets(self) -> Dict[str, List[str]]:
        return {key: list(codes) for key, codes in self.snapshot().items()}
