# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Technical decoding of HC1 credentials.

Undoes, in order, the encodings applied to a signed DCC:

1. ``HC1:`` context prefix
2. Base45 text encoding
3. zlib compression (optional; uncompressed data passes through)
4. COSE_Sign1 envelope (CBOR, optionally tag 18)
5. CWT claims carrying the ``hcert`` health certificate (claim -260/1)

Every step raises :class:`~app.dcc.exceptions.CodecError` on failure.
The pipeline in :mod:`app.dcc.validator` turns those into technical
verification results; nothing here builds results itself.

References
----------
- eHealth Network, Electronic Health Certificate Specification v1.0.5
- RFC 8152 (COSE), RFC 8392 (CWT)
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from collections.abc import Mapping
from typing import Any, Dict, Optional, Protocol, Tuple

import base45
import cbor2

from app.config import HC1_PREFIX
from app.dcc.credential import DecodedCredential, GreenCertificate, hcert_to_json
from app.dcc.exceptions import CodecError

logger = logging.getLogger("dcc.codec")

__all__ = ["CoseEnvelope", "DccCodec", "DefaultDccCodec", "thaw"]

# COSE header labels
COSE_HEADER_ALG = 1
COSE_HEADER_KID = 4

# CWT claim keys
CWT_ISS = 1
CWT_EXP = 4
CWT_IAT = 6
CWT_HCERT = -260
HCERT_V1 = 1

_COSE_SIGN1_TAG = 18
_ZLIB_HEADER = 0x78


def thaw(obj: Any) -> Any:
    """Convert decoded CBOR containers to plain ``dict`` and ``list``.

    cbor2 6.x returns ``frozendict`` maps and ``tuple`` arrays for
    immutable contexts such as tag contents and map keys.
    """
    if isinstance(obj, Mapping):
        return {key: thaw(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [thaw(item) for item in obj]
    return obj


@dataclass(frozen=True)
class CoseEnvelope:
    """Decoded COSE_Sign1 structure.

    The raw protected header and payload byte strings are kept for
    signature verification, which signs them verbatim.
    """

    protected_bstr: bytes
    protected: Dict[Any, Any]
    unprotected: Dict[Any, Any]
    payload: bytes
    signature: bytes
    raw: bytes = field(repr=False, default=b"")

    @property
    def kid(self) -> Optional[bytes]:
        kid = self.protected.get(COSE_HEADER_KID) or self.unprotected.get(COSE_HEADER_KID)
        return kid if isinstance(kid, bytes) and kid else None

    @property
    def algorithm(self) -> Optional[int]:
        alg = self.protected.get(COSE_HEADER_ALG)
        if alg is None:
            alg = self.unprotected.get(COSE_HEADER_ALG)
        return alg


class DccCodec(Protocol):
    """Technical codec chain used by the decode stage."""

    def strip_prefix(self, dcc: str) -> Tuple[str, str]: ...

    def base45_decode(self, text: str) -> bytes: ...

    def decompress(self, data: bytes) -> bytes: ...

    def decode_cose(self, data: bytes) -> CoseEnvelope: ...

    def decode_payload(self, payload: bytes) -> DecodedCredential: ...


class DefaultDccCodec:
    """Codec chain backed by ``base45``, ``zlib`` and ``cbor2``."""

    def __init__(self, prefix: str = HC1_PREFIX):
        self._prefix = prefix

    def strip_prefix(self, dcc: str) -> Tuple[str, str]:
        """Return ``(context_prefix, remainder)``."""
        if not dcc or not dcc.startswith(self._prefix):
            raise CodecError("prefix", f"missing context prefix {self._prefix!r}")
        return self._prefix, dcc[len(self._prefix):]

    def base45_decode(self, text: str) -> bytes:
        try:
            return base45.b45decode(text)
        except Exception as exc:
            raise CodecError("base45", str(exc)) from exc

    def decompress(self, data: bytes) -> bytes:
        if not data or data[0] != _ZLIB_HEADER:
            logger.debug("Payload is not zlib-compressed; passing through")
            return data
        try:
            return zlib.decompress(data)
        except zlib.error as exc:
            raise CodecError("decompress", str(exc)) from exc

    def decode_cose(self, data: bytes) -> CoseEnvelope:
        try:
            obj = cbor2.loads(data)
        except Exception as exc:
            raise CodecError("cose", f"CBOR decoding failed: {exc}") from exc

        while isinstance(obj, cbor2.CBORTag):
            if obj.tag != _COSE_SIGN1_TAG:
                raise CodecError("cose", f"unexpected CBOR tag {obj.tag}")
            obj = obj.value

        obj = thaw(obj)
        if not isinstance(obj, list) or len(obj) != 4:
            raise CodecError("cose", "COSE_Sign1 must be a 4-element array")

        protected_bstr, unprotected, payload, signature = obj
        if not isinstance(protected_bstr, bytes) or not isinstance(payload, bytes) \
                or not isinstance(signature, bytes):
            raise CodecError("cose", "COSE_Sign1 members have wrong types")

        protected: Dict[Any, Any] = {}
        if protected_bstr:
            try:
                protected = thaw(cbor2.loads(protected_bstr))
            except Exception as exc:
                raise CodecError("cose", f"protected header undecodable: {exc}") from exc
            if not isinstance(protected, dict):
                raise CodecError("cose", "protected header is not a map")

        return CoseEnvelope(
            protected_bstr=protected_bstr,
            protected=protected,
            unprotected=unprotected if isinstance(unprotected, dict) else {},
            payload=payload,
            signature=signature,
            raw=data,
        )

    def decode_payload(self, payload: bytes) -> DecodedCredential:
        try:
            claims = thaw(cbor2.loads(payload))
        except Exception as exc:
            raise CodecError("cbor", f"CWT decoding failed: {exc}") from exc
        if not isinstance(claims, dict):
            raise CodecError("cbor", "CWT claims are not a map")

        hcert_claim = claims.get(CWT_HCERT)
        hcert = hcert_claim.get(HCERT_V1) if isinstance(hcert_claim, dict) else None
        if not isinstance(hcert, dict):
            raise CodecError("cbor", "hcert claim missing")

        try:
            issued_at = _epoch_to_datetime(claims.get(CWT_IAT))
            expiration_time = _epoch_to_datetime(claims.get(CWT_EXP))
            certificate = GreenCertificate.from_json(hcert)
        except (TypeError, ValueError, AttributeError, OverflowError) as exc:
            raise CodecError("cbor", str(exc)) from exc

        return DecodedCredential(
            issued_at=issued_at,
            expiration_time=expiration_time,
            issuing_country=claims.get(CWT_ISS),
            certificate=certificate,
            hcert_json=hcert_to_json(hcert),
        )


def _epoch_to_datetime(value: Any) -> datetime:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"expected epoch seconds, got {value!r}")
    return datetime.fromtimestamp(value, tz=timezone.utc)
