# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Business-rule types and the rule-engine interface.

Rules are CertLogic business rules distributed by the DCC gateway.  This
module models them, the outcome of evaluating one, and the external
parameters handed to the engine.  The engine that interprets the rule
logic is a collaborator and is plugged in through :class:`RuleEngine`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from app.dcc.dates import to_utc_datetime

logger = logging.getLogger("dcc.rules")

__all__ = [
    "CertEngineType",
    "DisabledRuleEngine",
    "ExternalParameter",
    "Rule",
    "RuleEngine",
    "RuleOutcome",
    "RuleResult",
    "RuleType",
]


class RuleType(str, Enum):
    ACCEPTANCE = "ACCEPTANCE"
    INVALIDATION = "INVALIDATION"


class RuleResult(str, Enum):
    PASSED = "PASSED"
    FAIL = "FAIL"
    OPEN = "OPEN"


class CertEngineType(str, Enum):
    """Certificate classification understood by the rule engine."""

    GENERAL = "GENERAL"
    VACCINATION = "VACCINATION"
    RECOVERY = "RECOVERY"
    TEST = "TEST"


@dataclass(frozen=True)
class Rule:
    """One CertLogic business rule.

    Attributes:
        identifier: Rule id, e.g. ``"VR-DE-0001"``.
        rule_type: Acceptance or invalidation rule; ``None`` if the
            gateway sent a kind this service does not know.
        descriptions: Localized descriptions keyed by language code.
        logic: The CertLogic expression, passed through untouched.
    """

    identifier: str
    rule_type: Optional[RuleType] = None
    version: Optional[str] = None
    schema_version: Optional[str] = None
    engine: Optional[str] = None
    engine_version: Optional[str] = None
    certificate_type: Optional[str] = None
    descriptions: Dict[str, str] = field(default_factory=dict)
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    affected_fields: List[str] = field(default_factory=list)
    logic: Any = None
    country_code: Optional[str] = None
    region: Optional[str] = None

    def description_for(self, lang: str) -> Optional[str]:
        return self.descriptions.get(lang)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Rule":
        """Build a rule from gateway JSON (CertLogic field names)."""
        kind = data.get("Type")
        try:
            rule_type = RuleType(kind.upper()) if isinstance(kind, str) else None
        except ValueError:
            logger.debug("Unknown rule kind %r on rule %s", kind, data.get("Identifier"))
            rule_type = None
        descriptions = {
            d["lang"]: d.get("desc", "")
            for d in data.get("Description") or []
            if isinstance(d, dict) and "lang" in d
        }
        return cls(
            identifier=data["Identifier"],
            rule_type=rule_type,
            version=data.get("Version"),
            schema_version=data.get("SchemaVersion"),
            engine=data.get("Engine"),
            engine_version=data.get("EngineVersion"),
            certificate_type=data.get("CertificateType"),
            descriptions=descriptions,
            valid_from=to_utc_datetime(data.get("ValidFrom")),
            valid_to=to_utc_datetime(data.get("ValidTo")),
            affected_fields=list(data.get("AffectedFields") or []),
            logic=data.get("Logic"),
            country_code=data.get("Country"),
            region=data.get("Region"),
        )


@dataclass(frozen=True)
class ExternalParameter:
    """Context the rule engine evaluates rules against."""

    validation_clock: datetime
    value_sets: Dict[str, List[str]]
    country_code: Optional[str]
    exp: datetime
    iat: datetime
    issuer_country_code: Optional[str]
    kid: str
    region: Optional[str] = None


@dataclass(frozen=True)
class RuleOutcome:
    """Result of evaluating one rule."""

    rule: Optional[Rule]
    result: RuleResult
    current: Optional[str] = None
    validation_errors: List[Exception] = field(default_factory=list)


class RuleEngine(Protocol):
    def validate(
        self,
        cert_type: CertEngineType,
        schema_version: Optional[str],
        rules: List[Rule],
        external_parameter: ExternalParameter,
        hcert_json: str,
    ) -> List[RuleOutcome]: ...


class DisabledRuleEngine:
    """Stand-in used when no rule engine is wired.

    Reports every rule as OPEN so that a missing engine never turns into
    a passing verdict.
    """

    def validate(
        self,
        cert_type: CertEngineType,
        schema_version: Optional[str],
        rules: List[Rule],
        external_parameter: ExternalParameter,
        hcert_json: str,
    ) -> List[RuleOutcome]:
        error = RuntimeError("no rule engine configured")
        return [
            RuleOutcome(rule=rule, result=RuleResult.OPEN, validation_errors=[error])
            for rule in rules
        ]
