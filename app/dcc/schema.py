# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Structural validation of the health certificate claim.

Checks the ``hcert`` claim inside the CWT payload against a JSON Schema
describing the DCC data structure (eHN DCC schema 1.3, reduced to the
fields the pipeline and rule engine rely on).  The result is a plain
well-formed / not well-formed signal; the decode stage reports the
``schema invalid`` diagnostic.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import cbor2
import jsonschema
from jsonschema import Draft7Validator

from app.dcc.codec import CWT_HCERT, HCERT_V1, thaw

log = logging.getLogger("dcc.schema")

__all__ = ["DCC_SCHEMA", "JsonSchemaValidator", "SchemaValidator"]


_DATE = {"type": "string", "pattern": r"^\d{4}(-\d{2}(-\d{2})?)?$"}
_DATE_TIME = {"type": "string", "format": "date-time"}
_CODE = {"type": "string"}
_COUNTRY = {"type": "string", "pattern": r"^[A-Z]{2}$"}
_ISSUER = {"type": "string", "maxLength": 80}
_CERT_ID = {"type": "string", "maxLength": 80}

DCC_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "EU DCC",
    "type": "object",
    "required": ["ver", "nam", "dob"],
    "properties": {
        "ver": {"type": "string", "pattern": r"^\d+\.\d+\.\d+$"},
        "nam": {
            "type": "object",
            "required": ["fnt"],
            "properties": {
                "fn": {"type": "string", "maxLength": 80},
                "fnt": {"type": "string", "pattern": r"^[A-Z<]*$", "maxLength": 80},
                "gn": {"type": "string", "maxLength": 80},
                "gnt": {"type": "string", "pattern": r"^[A-Z<]*$", "maxLength": 80},
            },
        },
        "dob": {"type": "string", "pattern": r"^((19|20)\d\d(-\d\d){0,2}){0,1}$"},
        "v": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["tg", "vp", "mp", "ma", "dn", "sd", "dt", "co", "is", "ci"],
                "properties": {
                    "tg": _CODE, "vp": _CODE, "mp": _CODE, "ma": _CODE,
                    "dn": {"type": "integer", "minimum": 1, "maximum": 9},
                    "sd": {"type": "integer", "minimum": 1, "maximum": 9},
                    "dt": _DATE, "co": _COUNTRY, "is": _ISSUER, "ci": _CERT_ID,
                },
            },
        },
        "t": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["tg", "tt", "sc", "tr", "co", "is", "ci"],
                "properties": {
                    "tg": _CODE, "tt": _CODE, "nm": {"type": "string"}, "ma": _CODE,
                    "sc": _DATE_TIME, "tr": _CODE, "tc": {"type": "string"},
                    "co": _COUNTRY, "is": _ISSUER, "ci": _CERT_ID,
                },
            },
        },
        "r": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["tg", "fr", "co", "is", "df", "du", "ci"],
                "properties": {
                    "tg": _CODE, "fr": _DATE, "co": _COUNTRY, "is": _ISSUER,
                    "df": _DATE, "du": _DATE, "ci": _CERT_ID,
                },
            },
        },
    },
    "oneOf": [
        {"required": ["v"]},
        {"required": ["t"]},
        {"required": ["r"]},
    ],
}


class SchemaValidator(Protocol):
    """Well-formedness check over the CWT payload bytes."""

    def validate(self, cbor_payload: bytes) -> bool: ...


class JsonSchemaValidator:
    """Validates the ``hcert`` claim with a Draft 7 JSON Schema."""

    def __init__(self, schema: Optional[Dict[str, Any]] = None, max_errors: int = 10):
        self._validator = Draft7Validator(schema or DCC_SCHEMA)
        self._max_errors = max_errors

    def validate(self, cbor_payload: bytes) -> bool:
        errors = self.errors(cbor_payload)
        if errors:
            log.debug("DCC schema violations: %s", "; ".join(errors))
        return not errors

    def errors(self, cbor_payload: bytes) -> List[str]:
        """Return schema violations (empty if well-formed)."""
        try:
            claims = thaw(cbor2.loads(cbor_payload))
        except Exception as exc:
            return [f"CWT undecodable: {exc}"]

        hcert_claim = claims.get(CWT_HCERT) if isinstance(claims, dict) else None
        hcert = hcert_claim.get(HCERT_V1) if isinstance(hcert_claim, dict) else None
        if not isinstance(hcert, dict):
            return ["hcert claim missing"]

        errors: List[str] = []
        try:
            for error in self._validator.iter_errors(hcert):
                if len(errors) >= self._max_errors:
                    errors.append(f"... and more errors (stopped at {self._max_errors})")
                    break
                path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
                errors.append(f"{path}: {error.message}")
        except jsonschema.SchemaError as e:
            errors.append(f"Invalid schema: {e.message}")
        return errors
