# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""DCC validation wire models and enumerations."""

from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.config import PCR_TEST_TYPE, RAPID_TEST_TYPE
from app.dcc.exceptions import InvalidAcceptableTypeError


# =============================================================================
# Result enumerations
# =============================================================================

class ResultType(str, Enum):
    OK = "OK"
    NOK = "NOK"


class ResultStatusType(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    OPEN = "OPEN"


class ResultTypeIdentifier(str, Enum):
    TECHNICAL_VERIFICATION = "TECHNICAL_VERIFICATION"
    ISSUER_INVALIDATION = "ISSUER_INVALIDATION"
    DESTINATION_ACCEPTANCE = "DESTINATION_ACCEPTANCE"
    TRAVELLER_ACCEPTANCE = "TRAVELLER_ACCEPTANCE"


# =============================================================================
# Access token type and acceptable types
# =============================================================================

class AccessTokenType(IntEnum):
    """Validation depth; each level implies every check of the lower ones."""

    STRUCTURE = 0
    CRYPTOGRAPHIC = 1
    FULL = 2


class AcceptableType(str, Enum):
    """Credential kinds a caller may accept, keyed by condition symbol.

    ``PCR_TEST`` and ``RAT_TEST`` refine ``TEST`` by the type-of-test code
    carried in the first test entry.
    """

    VACCINATION = "v"
    RECOVERY = "r"
    TEST = "t"
    PCR_TEST = "tp"
    RAT_TEST = "tr"

    @classmethod
    def from_symbol(cls, symbol: str) -> "AcceptableType":
        try:
            return cls(symbol)
        except ValueError:
            raise InvalidAcceptableTypeError(symbol) from None

    @property
    def test_type_code(self) -> Optional[str]:
        if self is AcceptableType.PCR_TEST:
            return PCR_TEST_TYPE
        if self is AcceptableType.RAT_TEST:
            return RAPID_TEST_TYPE
        return None


# =============================================================================
# Conditions (request) / Result (response)
# =============================================================================

class AccessTokenConditions(BaseModel):
    """Caller-supplied acceptance conditions for one validation."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    hash: Optional[str] = None
    lang: Optional[str] = None
    fnt: Optional[str] = None
    gnt: Optional[str] = None
    dob: Optional[str] = None
    coa: Optional[str] = None
    cod: Optional[str] = None
    roa: Optional[str] = None
    rod: Optional[str] = None
    type: Optional[List[str]] = None
    category: Optional[List[str]] = None
    validation_clock: Optional[str] = Field(default=None, alias="validationClock")
    valid_from: Optional[str] = Field(default=None, alias="validFrom")
    valid_to: Optional[str] = Field(default=None, alias="validTo")


class ValidationResult(BaseModel):
    """One itemized entry of the validation verdict."""

    model_config = ConfigDict(frozen=True)

    result: ResultType
    type: ResultStatusType
    identifier: ResultTypeIdentifier
    details: str


class ValidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dcc: str
    access_token_type: AccessTokenType = Field(alias="accessTokenType")
    conditions: AccessTokenConditions


class ValidateResponse(BaseModel):
    results: List[ValidationResult]
