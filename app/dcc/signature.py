# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""COSE_Sign1 signature verification against DSC certificates.

Verifies the envelope signature with the public key of a candidate
Document Signer Certificate (DSC).  Candidates are usually X.509
certificates; a bare public key is accepted as well, in which case no
validity bound is known.

Supported algorithms:

* ``-7``  ES256 (ECDSA P-256 / SHA-256)
* ``-35`` ES384 (ECDSA P-384 / SHA-384)
* ``-37`` PS256 (RSASSA-PSS / SHA-256, salt length 32)

References
----------
- RFC 8152 §4.4: Signing and verification process
- eHealth Network, Electronic Health Certificate Specification §3.3.1
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

import cbor2
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from app.dcc.codec import CoseEnvelope

logger = logging.getLogger("dcc.signature")

__all__ = [
    "Certificate",
    "certificate_not_after",
    "encode_kid",
    "verify_cose_signature",
]

Certificate = Union[x509.Certificate, ec.EllipticCurvePublicKey, rsa.RSAPublicKey]

ALG_ES256 = -7
ALG_ES384 = -35
ALG_PS256 = -37


def encode_kid(kid: bytes) -> str:
    """Encode a key identifier the way certificate stores index it."""
    return base64.b64encode(kid).decode("ascii")


def certificate_not_after(certificate: Any) -> Optional[datetime]:
    """Return the not-after bound of an X.509 certificate as UTC.

    Returns ``None`` for candidates that carry no validity period.
    """
    if not isinstance(certificate, x509.Certificate):
        return None
    not_after = getattr(certificate, "not_valid_after_utc", None)
    if not_after is None:  # cryptography < 42
        not_after = certificate.not_valid_after.replace(tzinfo=timezone.utc)
    return not_after


def _sig_structure(envelope: CoseEnvelope) -> bytes:
    return cbor2.dumps(["Signature1", envelope.protected_bstr, b"", envelope.payload])


def _raw_to_der(signature: bytes) -> bytes:
    if len(signature) % 2 != 0:
        raise ValueError(f"Unexpected ECDSA signature length: {len(signature)}")
    half = len(signature) // 2
    r = int.from_bytes(signature[:half], "big")
    s = int.from_bytes(signature[half:], "big")
    return encode_dss_signature(r, s)


def verify_cose_signature(envelope: CoseEnvelope, certificate: Any) -> bool:
    """Verify *envelope* against one candidate certificate.

    Returns ``True`` only if the signature verifies.  Mismatched key
    types, unsupported algorithms and malformed signatures count as
    failed verification; the caller moves on to the next candidate.
    """
    alg = envelope.algorithm
    to_be_signed = _sig_structure(envelope)

    try:
        public_key = certificate.public_key() if isinstance(certificate, x509.Certificate) else certificate
        if alg in (ALG_ES256, ALG_ES384):
            if not isinstance(public_key, ec.EllipticCurvePublicKey):
                logger.debug("ECDSA envelope but candidate key is %s", type(public_key).__name__)
                return False
            digest = hashes.SHA256() if alg == ALG_ES256 else hashes.SHA384()
            public_key.verify(_raw_to_der(envelope.signature), to_be_signed, ec.ECDSA(digest))
        elif alg == ALG_PS256:
            if not isinstance(public_key, rsa.RSAPublicKey):
                logger.debug("PS256 envelope but candidate key is %s", type(public_key).__name__)
                return False
            public_key.verify(
                envelope.signature,
                to_be_signed,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=32),
                hashes.SHA256(),
            )
        else:
            logger.warning("Unsupported COSE algorithm: %r", alg)
            return False
    except (InvalidSignature, UnsupportedAlgorithm, ValueError) as exc:
        logger.debug("COSE signature verification failed: %s", exc)
        return False

    return True
