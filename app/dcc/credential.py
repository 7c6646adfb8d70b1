# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Decoded DCC payload model.

A health certificate carries exactly one of three statement groups:
vaccination (``v``), test (``t``) or recovery (``r``).  The group present
determines the :class:`CertificateType`; per-type logic in the pipeline
matches on that value.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

__all__ = [
    "CertificateType",
    "DecodedCredential",
    "GreenCertificate",
    "Person",
    "RecoveryEntry",
    "TestEntry",
    "VaccinationEntry",
]


class CertificateType(str, Enum):
    VACCINATION = "VACCINATION"
    TEST = "TEST"
    RECOVERY = "RECOVERY"


@dataclass(frozen=True)
class Person:
    standardised_family_name: Optional[str] = None
    family_name: Optional[str] = None
    standardised_given_name: Optional[str] = None
    given_name: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Person":
        return cls(
            standardised_family_name=data.get("fnt"),
            family_name=data.get("fn"),
            standardised_given_name=data.get("gnt"),
            given_name=data.get("gn"),
        )


@dataclass(frozen=True)
class VaccinationEntry:
    disease: Optional[str] = None
    vaccine_prophylaxis: Optional[str] = None
    medicinal_product: Optional[str] = None
    manufacturer: Optional[str] = None
    dose_number: Optional[int] = None
    total_series_of_doses: Optional[int] = None
    date_of_vaccination: Optional[str] = None
    country_of_vaccination: Optional[str] = None
    certificate_issuer: Optional[str] = None
    certificate_identifier: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "VaccinationEntry":
        return cls(
            disease=data.get("tg"),
            vaccine_prophylaxis=data.get("vp"),
            medicinal_product=data.get("mp"),
            manufacturer=data.get("ma"),
            dose_number=data.get("dn"),
            total_series_of_doses=data.get("sd"),
            date_of_vaccination=_as_text(data.get("dt")),
            country_of_vaccination=data.get("co"),
            certificate_issuer=data.get("is"),
            certificate_identifier=data.get("ci"),
        )


@dataclass(frozen=True)
class TestEntry:
    disease: Optional[str] = None
    type_of_test: Optional[str] = None
    test_name: Optional[str] = None
    test_name_and_manufacturer: Optional[str] = None
    date_time_of_collection: Optional[str] = None
    test_result: Optional[str] = None
    testing_centre: Optional[str] = None
    country_of_test: Optional[str] = None
    certificate_issuer: Optional[str] = None
    certificate_identifier: Optional[str] = None

    __test__ = False  # not a pytest class

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TestEntry":
        return cls(
            disease=data.get("tg"),
            type_of_test=data.get("tt"),
            test_name=data.get("nm"),
            test_name_and_manufacturer=data.get("ma"),
            date_time_of_collection=_as_text(data.get("sc")),
            test_result=data.get("tr"),
            testing_centre=data.get("tc"),
            country_of_test=data.get("co"),
            certificate_issuer=data.get("is"),
            certificate_identifier=data.get("ci"),
        )


@dataclass(frozen=True)
class RecoveryEntry:
    disease: Optional[str] = None
    date_of_first_positive_test: Optional[str] = None
    country_of_test: Optional[str] = None
    certificate_issuer: Optional[str] = None
    certificate_valid_from: Optional[str] = None
    certificate_valid_until: Optional[str] = None
    certificate_identifier: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RecoveryEntry":
        return cls(
            disease=data.get("tg"),
            date_of_first_positive_test=_as_text(data.get("fr")),
            country_of_test=data.get("co"),
            certificate_issuer=data.get("is"),
            certificate_valid_from=_as_text(data.get("df")),
            certificate_valid_until=_as_text(data.get("du")),
            certificate_identifier=data.get("ci"),
        )


@dataclass(frozen=True)
class GreenCertificate:
    """The ``hcert`` health certificate claim.

    Attributes:
        schema_version: ``ver`` field.
        person: Holder name block (``nam``).
        date_of_birth: ``dob`` as carried, compared verbatim.
        vaccinations / tests / recoveries: Statement groups; exactly one
            is non-empty for a well-formed certificate.
    """

    schema_version: Optional[str]
    person: Person
    date_of_birth: Optional[str]
    vaccinations: List[VaccinationEntry] = field(default_factory=list)
    tests: List[TestEntry] = field(default_factory=list)
    recoveries: List[RecoveryEntry] = field(default_factory=list)

    @property
    def certificate_type(self) -> CertificateType:
        if self.vaccinations:
            return CertificateType.VACCINATION
        if self.recoveries:
            return CertificateType.RECOVERY
        return CertificateType.TEST

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "GreenCertificate":
        return cls(
            schema_version=data.get("ver"),
            person=Person.from_json(data.get("nam") or {}),
            date_of_birth=_as_text(data.get("dob")),
            vaccinations=[VaccinationEntry.from_json(v) for v in data.get("v") or []],
            tests=[TestEntry.from_json(t) for t in data.get("t") or []],
            recoveries=[RecoveryEntry.from_json(r) for r in data.get("r") or []],
        )


@dataclass(frozen=True)
class DecodedCredential:
    """CWT claims and health certificate decoded from a DCC.

    Attributes:
        issued_at: CWT ``iat`` (claim 6) as aware UTC datetime.
        expiration_time: CWT ``exp`` (claim 4) as aware UTC datetime.
        issuing_country: CWT ``iss`` (claim 1).
        certificate: The typed health certificate.
        hcert_json: Compact JSON of the health certificate, as handed to
            the rule engine.
    """

    issued_at: datetime
    expiration_time: datetime
    issuing_country: Optional[str]
    certificate: GreenCertificate
    hcert_json: str

    @property
    def schema_version(self) -> Optional[str]:
        return self.certificate.schema_version


def hcert_to_json(hcert: Dict[str, Any]) -> str:
    """Serialize the health certificate claim as compact JSON."""
    return json.dumps(hcert, separators=(",", ":"), ensure_ascii=False, default=str)


def _as_text(value: Any) -> Optional[str]:
    # cbor2 decodes tagged dates to date/datetime objects.
    if value is None or isinstance(value, str):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
