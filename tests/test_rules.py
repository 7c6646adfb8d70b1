# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for business-rule parsing and the FULL-level rule stage."""

from datetime import datetime, timezone

import pytest

from app.dcc.models import AccessTokenType, ResultStatusType, ResultType, ResultTypeIdentifier
from app.dcc.providers import RulesStore
from app.dcc.rules import (
    CertEngineType,
    DisabledRuleEngine,
    Rule,
    RuleOutcome,
    RuleResult,
    RuleType,
)
from app.dcc.validator import DccValidator


def _rule_json(identifier="GR-NL-0001", kind="Acceptance", country="NL", **extra):
    data = {
        "Identifier": identifier,
        "Type": kind,
        "Country": country,
        "Version": "1.0.0",
        "SchemaVersion": "1.3.0",
        "Engine": "CERTLOGIC",
        "EngineVersion": "1.0.0",
        "CertificateType": "General",
        "Description": [
            {"lang": "en", "desc": "The certificate must be valid."},
            {"lang": "de", "desc": "Das Zertifikat muss gültig sein."},
        ],
        "ValidFrom": "2021-06-01T00:00:00Z",
        "ValidTo": "2030-06-01T00:00:00Z",
        "AffectedFields": ["v.0.dn", "v.0.sd"],
        "Logic": {">=": [{"var": "payload.v.0.dn"}, {"var": "payload.v.0.sd"}]},
    }
    data.update(extra)
    return data


class FakeRuleEngine:
    """Returns preset outcomes and records the call."""

    def __init__(self, outcomes_for):
        self._outcomes_for = outcomes_for
        self.calls = []

    def validate(self, cert_type, schema_version, rules, external_parameter, hcert_json):
        self.calls.append((cert_type, schema_version, rules, external_parameter, hcert_json))
        return self._outcomes_for(rules)


# =========================================================================
# Rule parsing
# =========================================================================

class TestRuleFromJson:

    def test_fields(self):
        rule = Rule.from_json(_rule_json())
        assert rule.identifier == "GR-NL-0001"
        assert rule.rule_type is RuleType.ACCEPTANCE
        assert rule.country_code == "NL"
        assert rule.description_for("en") == "The certificate must be valid."
        assert rule.description_for("fr") is None
        assert rule.valid_from == datetime(2021, 6, 1, tzinfo=timezone.utc)
        assert rule.affected_fields == ["v.0.dn", "v.0.sd"]
        assert rule.logic == {">=": [{"var": "payload.v.0.dn"}, {"var": "payload.v.0.sd"}]}

    def test_invalidation(self):
        assert Rule.from_json(_rule_json(kind="Invalidation")).rule_type is RuleType.INVALIDATION

    def test_unknown_kind(self):
        assert Rule.from_json(_rule_json(kind="Whatever")).rule_type is None

    def test_identifier_required(self):
        data = _rule_json()
        del data["Identifier"]
        with pytest.raises(KeyError):
            Rule.from_json(data)


class TestDisabledRuleEngine:

    def test_every_rule_open(self):
        rules = [Rule.from_json(_rule_json("A")), Rule.from_json(_rule_json("B"))]
        outcomes = DisabledRuleEngine().validate(CertEngineType.VACCINATION, "1.3.0", rules, None, "{}")
        assert [o.rule.identifier for o in outcomes] == ["A", "B"]
        assert all(o.result is RuleResult.OPEN for o in outcomes)
        assert all(o.validation_errors for o in outcomes)


# =========================================================================
# Rule stage
# =========================================================================

class TestRuleStage:
    """Mapping of rule outcomes into results at FULL level."""

    def _validator(self, certificate_store, value_set_store, rules, engine=None):
        return DccValidator(
            certificate_store,
            RulesStore({"NL": rules}),
            value_set_store,
            rule_engine=engine,
        )

    def test_no_rules_for_country(self, validator, make_dcc, make_conditions):
        results = validator.validate(make_dcc(), make_conditions(coa="FR"), AccessTokenType.FULL)
        last = results[-1]
        assert last.result == ResultType.OK
        assert last.type == ResultStatusType.PASSED
        assert last.identifier == ResultTypeIdentifier.ISSUER_INVALIDATION
        assert last.details == "No rules for country of departure defined"

    def test_rules_not_run_below_full(self, certificate_store, value_set_store, make_dcc, make_conditions):
        engine = FakeRuleEngine(lambda rules: [])
        validator = self._validator(certificate_store, value_set_store, [Rule.from_json(_rule_json())], engine)
        validator.validate(make_dcc(), make_conditions(), AccessTokenType.CRYPTOGRAPHIC)
        assert engine.calls == []

    def test_outcome_mapping(self, certificate_store, value_set_store, make_dcc, make_conditions):
        """PASSED, FAIL and OPEN map to OK/PASSED, NOK/FAILED and NOK/OPEN."""
        rules = [
            Rule.from_json(_rule_json("GR-NL-0001")),
            Rule.from_json(_rule_json("IR-NL-0002", kind="Invalidation")),
            Rule.from_json(_rule_json("GR-NL-0003")),
        ]
        engine = FakeRuleEngine(lambda rules: [
            RuleOutcome(rule=rules[0], result=RuleResult.PASSED),
            RuleOutcome(rule=rules[1], result=RuleResult.FAIL),
            RuleOutcome(rule=rules[2], result=RuleResult.OPEN),
        ])
        validator = self._validator(certificate_store, value_set_store, rules, engine)
        results = validator.validate(make_dcc(), make_conditions(), AccessTokenType.FULL)
        rule_results = results[-3:]
        assert [(r.result, r.type) for r in rule_results] == [
            (ResultType.OK, ResultStatusType.PASSED),
            (ResultType.NOK, ResultStatusType.FAILED),
            (ResultType.NOK, ResultStatusType.OPEN),
        ]
        assert [r.identifier for r in rule_results] == [
            ResultTypeIdentifier.DESTINATION_ACCEPTANCE,
            ResultTypeIdentifier.ISSUER_INVALIDATION,
            ResultTypeIdentifier.DESTINATION_ACCEPTANCE,
        ]

    def test_unknown_kind_and_missing_rule_are_invalidation(
        self, certificate_store, value_set_store, make_dcc, make_conditions
    ):
        """Outcomes without a known rule kind are reported as issuer invalidation."""
        rule = Rule.from_json(_rule_json("XR-NL-0001", kind="Whatever"))
        engine = FakeRuleEngine(lambda rules: [
            RuleOutcome(rule=rules[0], result=RuleResult.PASSED),
            RuleOutcome(rule=None, result=RuleResult.FAIL),
        ])
        validator = self._validator(certificate_store, value_set_store, [rule], engine)
        results = validator.validate(make_dcc(), make_conditions(), AccessTokenType.FULL)
        assert [r.identifier for r in results[-2:]] == [
            ResultTypeIdentifier.ISSUER_INVALIDATION,
            ResultTypeIdentifier.ISSUER_INVALIDATION,
        ]
        assert results[-1].type == ResultStatusType.FAILED
        assert results[-1].details == "  "

    def test_details_format(self, certificate_store, value_set_store, make_dcc, make_conditions):
        rule = Rule.from_json(_rule_json())
        engine = FakeRuleEngine(lambda rules: [
            RuleOutcome(
                rule=rules[0],
                result=RuleResult.OPEN,
                current="dn=1",
                validation_errors=[ValueError("bad var"), ValueError("bad op")],
            ),
        ])
        validator = self._validator(certificate_store, value_set_store, [rule], engine)
        results = validator.validate(make_dcc(), make_conditions(), AccessTokenType.FULL)
        assert results[-1].details == (
            "GR-NL-0001 The certificate must be valid. dn=1  Exceptions: bad var bad op "
        )

    def test_missing_description(self, certificate_store, value_set_store, make_dcc, make_conditions):
        rule = Rule.from_json(_rule_json(Description=[{"lang": "de", "desc": "nur deutsch"}]))
        engine = FakeRuleEngine(lambda rules: [RuleOutcome(rule=rules[0], result=RuleResult.PASSED)])
        validator = self._validator(certificate_store, value_set_store, [rule], engine)
        results = validator.validate(make_dcc(), make_conditions(), AccessTokenType.FULL)
        assert results[-1].details == "GR-NL-0001  "

    def test_engine_inputs(self, certificate_store, value_set_store, make_dcc, make_hcert, make_conditions, kid_b64):
        rule = Rule.from_json(_rule_json())
        engine = FakeRuleEngine(lambda rules: [])
        validator = self._validator(certificate_store, value_set_store, [rule], engine)
        validator.validate(make_dcc(hcert=make_hcert("r")), make_conditions(coa="nl", roa="NH"), AccessTokenType.FULL)

        (cert_type, schema_version, rules, params, hcert_json), = engine.calls
        assert cert_type is CertEngineType.RECOVERY
        assert schema_version == "1.3.0"
        assert rules == [rule]
        assert params.country_code == "nl"
        assert params.region == "NH"
        assert params.kid == kid_b64
        assert params.issuer_country_code == "DE"
        assert params.validation_clock == datetime(2021, 6, 15, 12, tzinfo=timezone.utc)
        assert params.exp == datetime(2021, 12, 31, tzinfo=timezone.utc)
        assert params.value_sets == {"covid-19-lab-test-type": ["LP6464-4", "LP217198-3"]}
        assert '"r":[' in hcert_json

    def test_default_engine_reports_open(self, certificate_store, value_set_store, make_dcc, make_conditions):
        validator = self._validator(certificate_store, value_set_store, [Rule.from_json(_rule_json())])
        results = validator.validate(make_dcc(), make_conditions(), AccessTokenType.FULL)
        assert results[-1].type == ResultStatusType.OPEN
        assert "no rule engine configured" in results[-1].details
