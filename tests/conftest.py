# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared test fixtures for the DCC validation test suite.

Provides factories for EC signing keys, self-signed DSC certificates,
health certificate payloads and complete HC1-encoded DCCs.  All DCCs are
built with real COSE_Sign1 signatures so the signature stage runs against
genuine key material.
"""

from __future__ import annotations

import base64
import copy
import zlib
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import base45
import cbor2
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from app.dcc.models import AccessTokenConditions
from app.dcc.providers import CertificateStore, RulesStore, ValueSetStore
from app.dcc.validator import DccValidator

DEFAULT_KID = b"\x01\x02\x03\x04\x05\x06\x07\x08"
ISSUED_AT = datetime(2021, 6, 1, tzinfo=timezone.utc)
EXPIRES_AT = datetime(2021, 12, 31, tzinfo=timezone.utc)

_OMIT = object()


# =========================================================================
# Health certificate payloads
# =========================================================================

_PERSON = {"fn": "Musterfrau", "fnt": "MUSTERFRAU", "gn": "Erika", "gnt": "ERIKA"}

_VACCINATION = {
    "tg": "840539006", "vp": "1119349007", "mp": "EU/1/20/1528", "ma": "ORG-100030215",
    "dn": 2, "sd": 2, "dt": "2021-05-20", "co": "DE", "is": "Robert Koch-Institut",
    "ci": "URN:UVCI:01DE/IZ12345A/5CWLU12RNOB9RXSEOP6FG8#W",
}

_TEST = {
    "tg": "840539006", "tt": "LP6464-4", "nm": "Roche LightCycler qPCR",
    "sc": "2021-06-01T10:00:00Z", "tr": "260415000", "tc": "Testzentrum Koeln",
    "co": "DE", "is": "Robert Koch-Institut", "ci": "URN:UVCI:01DE/TZ12345A/5CWLU12RNOB9RXSEOP6FG8#T",
}

_RECOVERY = {
    "tg": "840539006", "fr": "2021-05-01", "co": "DE", "is": "Robert Koch-Institut",
    "df": "2021-05-15", "du": "2021-11-15", "ci": "URN:UVCI:01DE/RZ12345A/5CWLU12RNOB9RXSEOP6FG8#R",
}


@pytest.fixture
def make_hcert() -> Callable[..., Dict[str, Any]]:
    """Factory fixture: health certificate claim of a given kind.

    ``kind`` is ``"v"``, ``"t"`` or ``"r"``; ``entry`` overrides fields of
    the single statement; other keyword arguments override top-level fields.
    """

    def _make(kind: str = "v", entry: Optional[Dict[str, Any]] = None, **fields: Any) -> Dict[str, Any]:
        base = {"v": _VACCINATION, "t": _TEST, "r": _RECOVERY}[kind]
        statement = dict(copy.deepcopy(base), **(entry or {}))
        hcert: Dict[str, Any] = {
            "ver": "1.3.0",
            "nam": dict(_PERSON),
            "dob": "1964-08-12",
            kind: [statement],
        }
        hcert.update(fields)
        return hcert

    return _make


# =========================================================================
# Keys and certificates
# =========================================================================

@pytest.fixture
def signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def make_certificate() -> Callable[..., x509.Certificate]:
    """Factory fixture: self-signed DSC for an EC key."""

    def _make(
        key: ec.EllipticCurvePrivateKey,
        not_before: datetime = datetime(2021, 1, 1, tzinfo=timezone.utc),
        not_after: datetime = datetime(2030, 1, 1, tzinfo=timezone.utc),
    ) -> x509.Certificate:
        name = x509.Name([
            x509.NameAttribute(NameOID.COUNTRY_NAME, "DE"),
            x509.NameAttribute(NameOID.COMMON_NAME, "Test DSC"),
        ])
        return (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .sign(key, hashes.SHA256())
        )

    return _make


@pytest.fixture
def signer_certificate(signing_key, make_certificate) -> x509.Certificate:
    return make_certificate(signing_key)


# =========================================================================
# HC1 DCC factory
# =========================================================================

def sign_es256(key: ec.EllipticCurvePrivateKey, protected: bytes, payload: bytes) -> bytes:
    """COSE ES256 signature (raw r||s) over the Sig_structure."""
    to_be_signed = cbor2.dumps(["Signature1", protected, b"", payload])
    r, s = decode_dss_signature(key.sign(to_be_signed, ec.ECDSA(hashes.SHA256())))
    return r.to_bytes(32, "big") + s.to_bytes(32, "big")


def encode_hc1(cose: bytes, compress: bool = True, prefix: str = "HC1:") -> str:
    data = zlib.compress(cose, 9) if compress else cose
    encoded = base45.b45encode(data)
    if isinstance(encoded, bytes):
        encoded = encoded.decode("ascii")
    return prefix + encoded


@pytest.fixture
def make_dcc(signing_key, make_hcert) -> Callable[..., str]:
    """Factory fixture: a complete HC1-encoded DCC.

    Keyword arguments:
        hcert: health certificate claim (default: vaccination).
        kid: key identifier placed in the protected header; ``None`` omits it.
        unprotected_kid: carry the kid in the unprotected header instead.
        key: signing key (default: the ``signing_key`` fixture).
        exp / iat: CWT timestamps as datetimes.
        claims: extra CWT claims merged last; a value of ``_OMIT`` removes
            the claim.
        compress: zlib-compress before Base45.
    """

    def _make(
        hcert: Optional[Dict[str, Any]] = None,
        kid: Optional[bytes] = DEFAULT_KID,
        key: Optional[ec.EllipticCurvePrivateKey] = None,
        exp: datetime = EXPIRES_AT,
        iat: datetime = ISSUED_AT,
        claims: Optional[Dict[int, Any]] = None,
        compress: bool = True,
        unprotected_kid: bool = False,
    ) -> str:
        cwt: Dict[int, Any] = {
            1: "DE",
            4: int(exp.timestamp()),
            6: int(iat.timestamp()),
            -260: {1: hcert if hcert is not None else make_hcert()},
        }
        for claim, value in (claims or {}).items():
            if value is _OMIT:
                cwt.pop(claim, None)
            else:
                cwt[claim] = value
        payload = cbor2.dumps(cwt)

        header: Dict[int, Any] = {1: -7}
        unprotected: Dict[int, Any] = {}
        if kid is not None:
            (unprotected if unprotected_kid else header)[4] = kid
        protected = cbor2.dumps(header)

        signature = sign_es256(key or signing_key, protected, payload)
        cose = cbor2.dumps(cbor2.CBORTag(18, [protected, unprotected, payload, signature]))
        return encode_hc1(cose, compress=compress)

    return _make


@pytest.fixture
def omit() -> object:
    """Sentinel for removing a CWT claim in ``make_dcc(claims=...)``."""
    return _OMIT


# =========================================================================
# Conditions, stores and validator
# =========================================================================

@pytest.fixture
def make_conditions() -> Callable[..., AccessTokenConditions]:
    """Factory fixture: conditions matching the default DCC holder."""

    def _make(**overrides: Any) -> AccessTokenConditions:
        data: Dict[str, Any] = {
            "fnt": "MUSTERFRAU",
            "gnt": "ERIKA",
            "dob": "1964-08-12",
            "coa": "NL",
            "roa": "NL",
            "validationClock": "2021-06-15T12:00:00+00:00",
            "validFrom": "2021-06-10T00:00:00+00:00",
            "validTo": "2021-06-20T00:00:00+00:00",
        }
        data.update(overrides)
        return AccessTokenConditions(**data)

    return _make


@pytest.fixture
def certificate_store(signer_certificate) -> CertificateStore:
    return CertificateStore({base64.b64encode(DEFAULT_KID).decode(): [signer_certificate]})


@pytest.fixture
def rules_store() -> RulesStore:
    return RulesStore()


@pytest.fixture
def value_set_store() -> ValueSetStore:
    return ValueSetStore({"covid-19-lab-test-type": ["LP6464-4", "LP217198-3"]})


@pytest.fixture
def validator(certificate_store, rules_store, value_set_store) -> DccValidator:
    return DccValidator(
        certificate_provider=certificate_store,
        rules_provider=rules_store,
        value_set_provider=value_set_store,
    )


@pytest.fixture
def kid_b64() -> str:
    """Store key of the default signing kid."""
    return base64.b64encode(DEFAULT_KID).decode()


@pytest.fixture
def es256_signer() -> Callable[[ec.EllipticCurvePrivateKey, bytes, bytes], bytes]:
    """The raw COSE ES256 signing helper used by ``make_dcc``."""
    return sign_es256
