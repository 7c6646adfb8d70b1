# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""DCC validation pipeline orchestrator.

Validates one encoded credential against caller-supplied acceptance
conditions and returns an ordered list of itemized results.  The depth of
validation is selected by :class:`~app.dcc.models.AccessTokenType`:

1. **Decode** (always): prefix, Base45, decompression, COSE envelope,
   key identifier, schema and CWT payload.  The first failing step emits
   a single technical FAILED result and ends the call.
2. **Structure hash** (``STRUCTURE`` only): byte-exact hash of the raw
   credential string against the caller's hash.
3. **Semantic checks** (always): expiry against the condition window
   and acceptable credential type.
4. **Identity match** (above ``STRUCTURE``): standardised names and
   date of birth.
5. **Signature** (above ``STRUCTURE``): candidate DSC certificates for
   the key identifier are tried in provider order; the first that
   verifies wins.
6. **Business rules** (``FULL`` only): rules for the arrival country
   are evaluated by the rule engine and each outcome becomes a result.

Only the decode stage short-circuits.  Semantic failures are recorded
and the remaining stages still run.  If nothing at all was recorded, a
single OK result is returned so the list is never empty.

All state is local to one :meth:`DccValidator.validate` call; the
providers are read through point-in-time snapshot lookups.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from app.config import DCC_HASH_ALGORITHM, RULE_DESCRIPTION_LANGUAGE
from app.dcc.codec import CoseEnvelope, DccCodec, DefaultDccCodec
from app.dcc.credential import CertificateType, DecodedCredential
from app.dcc.dates import parse_condition_timestamp, to_utc_datetime
from app.dcc.exceptions import CodecError, HashCalculationError
from app.dcc.models import (
    AcceptableType,
    AccessTokenConditions,
    AccessTokenType,
    ResultStatusType,
    ResultType,
    ResultTypeIdentifier,
    ValidationResult,
)
from app.dcc.providers import CertificateProvider, RulesProvider, ValueSetProvider
from app.dcc.results import ResultCollector
from app.dcc.rules import (
    CertEngineType,
    DisabledRuleEngine,
    ExternalParameter,
    RuleEngine,
    RuleOutcome,
    RuleResult,
    RuleType,
)
from app.dcc.schema import JsonSchemaValidator, SchemaValidator
from app.dcc.signature import certificate_not_after, encode_kid, verify_cose_signature

logger = logging.getLogger("dcc.validator")

__all__ = [
    "DccValidator",
    "DecodeContext",
    "DecodePipeline",
    "Terminate",
    "VerificationResult",
    "calculate_hash",
]

TECHNICAL = ResultTypeIdentifier.TECHNICAL_VERIFICATION

# Diagnostics consumed verbatim by downstream services.
MSG_NO_PREFIX = "No HC1: prefix"
MSG_BASE45 = "Wrong Base45 coding"
MSG_DECOMPRESS = "Can not decompress data"
MSG_COSE = "Can not decode cose"
MSG_KID = "Can not extract kid"
MSG_SCHEMA = "schema invalid"
MSG_CBOR = "can not decode cbor"
MSG_HASH_MISSING = "dcc hash not provided for check type 0"
MSG_HASH_MISMATCH = "dcc hash does not match"
MSG_EXPIRED = "Dcc exp date before validTo"
MSG_RECOVERY_FROM = "Recovery validFrom after condition validFrom"
MSG_RECOVERY_TO = "Recovery validTo before condition validTo"
MSG_TYPE_NOT_ACCEPTED = "required acceptable cert type not provided"
MSG_FAMILY_NAME = "family name does not match"
MSG_GIVEN_NAME = "given name does not match"
MSG_DOB = "data of birth does not match"
MSG_UNKNOWN_KID = "unknown dcc signing kid"
MSG_CERT_EXPIRED = "certificate expired for validation clock"
MSG_SIGNATURE_VALID = "signature valid"
MSG_SIGNATURE_INVALID = "signature invalid"
MSG_NO_RULES = "No rules for country of departure defined"


def calculate_hash(data: bytes, algorithm: str = DCC_HASH_ALGORITHM) -> str:
    """Hex digest of *data*.

    Raises
    ------
    HashCalculationError
        If the hash primitive is not available.  This is an environment
        fault and is not reported as a result.
    """
    try:
        digest = hashlib.new(algorithm)
    except ValueError as exc:
        raise HashCalculationError.unsupported(algorithm) from exc
    digest.update(data)
    return digest.hexdigest()


# ======================================================================
# Decode stage
# ======================================================================


@dataclass(frozen=True)
class VerificationResult:
    """Progress of the technical decode steps for one call."""

    context_prefix: Optional[str] = None
    base45_decoded: bool = False
    zlib_decoded: bool = False
    cose_decoded: bool = False
    schema_valid: bool = False
    cbor_decoded: bool = False


@dataclass(frozen=True)
class DecodeContext:
    """State threaded through the decode steps.

    ``data`` holds the intermediate value the next step consumes.
    """

    status: VerificationResult
    data: Any = None
    envelope: Optional[CoseEnvelope] = None
    kid: Optional[bytes] = None
    credential: Optional[DecodedCredential] = None


@dataclass(frozen=True)
class Terminate:
    """Unrecoverable decode failure with its technical diagnostic."""

    details: str


DecodeOutcome = Union[DecodeContext, Terminate]


class DecodePipeline:
    """Runs the technical decode steps, stopping at the first failure."""

    def __init__(self, codec: DccCodec, schema_validator: SchemaValidator):
        self._codec = codec
        self._schema_validator = schema_validator
        self._steps: Sequence[Callable[[DecodeContext], DecodeOutcome]] = (
            self._strip_prefix,
            self._base45_decode,
            self._decompress,
            self._decode_cose,
            self._extract_kid,
            self._validate_schema,
            self._decode_payload,
        )

    def run(self, dcc: str) -> DecodeOutcome:
        ctx = DecodeContext(status=VerificationResult(), data=dcc)
        for step in self._steps:
            outcome = step(ctx)
            if isinstance(outcome, Terminate):
                logger.info("DCC decode stopped at %s: %s", step.__name__.lstrip("_"), outcome.details)
                return outcome
            ctx = outcome
        return ctx

    def _strip_prefix(self, ctx: DecodeContext) -> DecodeOutcome:
        try:
            prefix, plain = self._codec.strip_prefix(ctx.data)
        except CodecError as exc:
            logger.debug("Prefix step failed: %s", exc)
            return Terminate(MSG_NO_PREFIX)
        return replace(ctx, data=plain, status=replace(ctx.status, context_prefix=prefix))

    def _base45_decode(self, ctx: DecodeContext) -> DecodeOutcome:
        try:
            compressed = self._codec.base45_decode(ctx.data)
        except CodecError as exc:
            logger.debug("Base45 step failed: %s", exc)
            return Terminate(MSG_BASE45)
        return replace(ctx, data=compressed, status=replace(ctx.status, base45_decoded=True))

    def _decompress(self, ctx: DecodeContext) -> DecodeOutcome:
        try:
            cose = self._codec.decompress(ctx.data)
        except CodecError as exc:
            logger.debug("Decompress step failed: %s", exc)
            return Terminate(MSG_DECOMPRESS)
        if not cose:
            return Terminate(MSG_DECOMPRESS)
        return replace(ctx, data=cose, status=replace(ctx.status, zlib_decoded=True))

    def _decode_cose(self, ctx: DecodeContext) -> DecodeOutcome:
        try:
            envelope = self._codec.decode_cose(ctx.data)
        except CodecError as exc:
            logger.debug("COSE step failed: %s", exc)
            return Terminate(MSG_COSE)
        return replace(ctx, envelope=envelope, status=replace(ctx.status, cose_decoded=True))

    def _extract_kid(self, ctx: DecodeContext) -> DecodeOutcome:
        kid = ctx.envelope.kid if ctx.envelope is not None else None
        if kid is None:
            return Terminate(MSG_KID)
        return replace(ctx, kid=kid)

    def _validate_schema(self, ctx: DecodeContext) -> DecodeOutcome:
        if not self._schema_validator.validate(ctx.envelope.payload):
            return Terminate(MSG_SCHEMA)
        return replace(ctx, status=replace(ctx.status, schema_valid=True))

    def _decode_payload(self, ctx: DecodeContext) -> DecodeOutcome:
        try:
            credential = self._codec.decode_payload(ctx.envelope.payload)
        except CodecError as exc:
            logger.debug("CBOR step failed: %s", exc)
            return Terminate(MSG_CBOR)
        return replace(
            ctx,
            data=None,
            credential=credential,
            status=replace(ctx.status, cbor_decoded=True),
        )


# ======================================================================
# Validator
# ======================================================================


class DccValidator:
    """Validates DCCs against access token conditions.

    Parameters
    ----------
    certificate_provider, rules_provider, value_set_provider
        Snapshot lookups, see :mod:`app.dcc.providers`.
    rule_engine
        Business-rule evaluator; defaults to :class:`DisabledRuleEngine`.
    codec, schema_validator
        Technical decode collaborators; default to the ``base45`` /
        ``cbor2`` / ``jsonschema`` implementations.
    signature_verifier
        ``(envelope, certificate) -> bool``.
    hash_algorithm
        ``hashlib`` name used for the ``STRUCTURE`` hash check.
    """

    def __init__(
        self,
        certificate_provider: CertificateProvider,
        rules_provider: RulesProvider,
        value_set_provider: ValueSetProvider,
        rule_engine: Optional[RuleEngine] = None,
        codec: Optional[DccCodec] = None,
        schema_validator: Optional[SchemaValidator] = None,
        signature_verifier: Callable[[CoseEnvelope, Any], bool] = verify_cose_signature,
        hash_algorithm: str = DCC_HASH_ALGORITHM,
    ):
        self._certificates = certificate_provider
        self._rules = rules_provider
        self._value_sets = value_set_provider
        self._rule_engine = rule_engine or DisabledRuleEngine()
        self._decoder = DecodePipeline(
            codec or DefaultDccCodec(),
            schema_validator or JsonSchemaValidator(),
        )
        self._verify_signature = signature_verifier
        self._hash_algorithm = hash_algorithm

    def validate(
        self,
        dcc: str,
        conditions: AccessTokenConditions,
        access_token_type: AccessTokenType,
    ) -> List[ValidationResult]:
        """Run the pipeline and return the itemized verdict (never empty).

        Raises
        ------
        InvalidAcceptableTypeError
            If the conditions name an unknown acceptable-type symbol.
        InvalidConditionsError
            If a condition timestamp needed by a stage is missing or
            unparseable.
        HashCalculationError
            If the hash primitive is unavailable.
        """
        results = ResultCollector()

        outcome = self._decoder.run(dcc)
        if isinstance(outcome, Terminate):
            results.failed(outcome.details)
            return results.finalize()

        results.passed(TECHNICAL, "OK")
        credential = outcome.credential

        if access_token_type == AccessTokenType.STRUCTURE:
            self._check_hash(dcc, conditions, results)

        self._check_expiration_dates(credential, conditions, results)
        self._check_acceptable_cert_type(credential, conditions, results)

        if access_token_type > AccessTokenType.STRUCTURE:
            self._check_name_dob(credential, conditions, results)
            self._check_signature(outcome.envelope, outcome.kid, conditions, results)
            if access_token_type == AccessTokenType.FULL:
                self._check_rules(credential, outcome.kid, conditions, results)

        final = results.finalize()
        logger.info(
            "DCC validated: access_type=%s results=%d failed=%d",
            access_token_type.name,
            len(final),
            sum(1 for r in final if r.result == ResultType.NOK),
        )
        return final

    # ------------------------------------------------------------------
    # Structure hash
    # ------------------------------------------------------------------

    def _check_hash(self, dcc: str, conditions: AccessTokenConditions, results: ResultCollector) -> None:
        if not conditions.hash:
            results.failed(MSG_HASH_MISSING)
            return
        if calculate_hash(dcc.encode("utf-8"), self._hash_algorithm) != conditions.hash:
            results.failed(MSG_HASH_MISMATCH)

    # ------------------------------------------------------------------
    # Semantic checks
    # ------------------------------------------------------------------

    def _check_expiration_dates(
        self,
        credential: DecodedCredential,
        conditions: AccessTokenConditions,
        results: ResultCollector,
    ) -> None:
        valid_to = parse_condition_timestamp("validTo", conditions.valid_to)
        if not credential.expiration_time > valid_to:
            results.failed(MSG_EXPIRED)

        certificate = credential.certificate
        if certificate.certificate_type is CertificateType.RECOVERY:
            valid_from = parse_condition_timestamp("validFrom", conditions.valid_from)
            recovery = certificate.recoveries[0]
            cert_valid_from = to_utc_datetime(recovery.certificate_valid_from)
            cert_valid_until = to_utc_datetime(recovery.certificate_valid_until)
            if cert_valid_from is not None and cert_valid_from > valid_from:
                results.failed(MSG_RECOVERY_FROM)
            if cert_valid_until is not None and cert_valid_until < valid_to:
                results.failed(MSG_RECOVERY_TO)

    def _check_acceptable_cert_type(
        self,
        credential: DecodedCredential,
        conditions: AccessTokenConditions,
        results: ResultCollector,
    ) -> None:
        if not conditions.type:
            return
        acceptable = [AcceptableType.from_symbol(symbol) for symbol in conditions.type]
        if not any(_is_acceptable(credential, kind) for kind in acceptable):
            results.failed(MSG_TYPE_NOT_ACCEPTED)

    # ------------------------------------------------------------------
    # Identity match
    # ------------------------------------------------------------------

    def _check_name_dob(
        self,
        credential: DecodedCredential,
        conditions: AccessTokenConditions,
        results: ResultCollector,
    ) -> None:
        certificate = credential.certificate
        person = certificate.person
        if person.standardised_family_name is None or person.standardised_family_name != conditions.fnt:
            results.failed(MSG_FAMILY_NAME)
        if person.standardised_given_name is None or person.standardised_given_name != conditions.gnt:
            results.failed(MSG_GIVEN_NAME)
        if certificate.date_of_birth is None or certificate.date_of_birth != conditions.dob:
            results.failed(MSG_DOB)

    # ------------------------------------------------------------------
    # Signature
    # ------------------------------------------------------------------

    def _check_signature(
        self,
        envelope: CoseEnvelope,
        kid: bytes,
        conditions: AccessTokenConditions,
        results: ResultCollector,
    ) -> None:
        validation_clock = parse_condition_timestamp("validationClock", conditions.validation_clock)
        kid_b64 = encode_kid(kid)
        certificates = self._certificates.certificates_for_kid(kid_b64)
        if not certificates:
            logger.info("No signer certificates for kid=%s", kid_b64)
            results.failed(MSG_UNKNOWN_KID)
            return

        sign_validated = False
        for index, certificate in enumerate(certificates):
            if not self._verify_signature(envelope, certificate):
                continue
            logger.debug("Signature verified by candidate %d of %d for kid=%s", index + 1, len(certificates), kid_b64)
            not_after = certificate_not_after(certificate)
            if not_after is not None and validation_clock > not_after:
                results.failed(MSG_CERT_EXPIRED)
            sign_validated = True
            break

        if sign_validated:
            results.passed(TECHNICAL, MSG_SIGNATURE_VALID)
        else:
            results.failed(MSG_SIGNATURE_INVALID)

    # ------------------------------------------------------------------
    # Business rules
    # ------------------------------------------------------------------

    def _check_rules(
        self,
        credential: DecodedCredential,
        kid: bytes,
        conditions: AccessTokenConditions,
        results: ResultCollector,
    ) -> None:
        country_of_arrival = conditions.coa
        rules = self._rules.rules_for_country(country_of_arrival) or []
        if not rules:
            results.passed(ResultTypeIdentifier.ISSUER_INVALIDATION, MSG_NO_RULES)
            return

        external_parameter = ExternalParameter(
            validation_clock=parse_condition_timestamp("validationClock", conditions.validation_clock),
            value_sets=self._value_sets.value_sets(),
            country_code=country_of_arrival,
            exp=credential.expiration_time,
            iat=credential.issued_at,
            issuer_country_code=credential.issuing_country,
            kid=encode_kid(kid),
            region=conditions.roa,
        )
        outcomes = self._rule_engine.validate(
            _engine_type(credential),
            credential.schema_version,
            list(rules),
            external_parameter,
            credential.hcert_json,
        )
        logger.debug("Rule engine returned %d outcomes for %d rules", len(outcomes), len(rules))
        for outcome in outcomes:
            result, status = _map_rule_result(outcome.result)
            results.add(result, status, _rule_identifier(outcome), _rule_details(outcome))


# ======================================================================
# Helpers
# ======================================================================


def _is_acceptable(credential: DecodedCredential, kind: AcceptableType) -> bool:
    certificate = credential.certificate
    cert_type = certificate.certificate_type
    if kind is AcceptableType.VACCINATION:
        return cert_type is CertificateType.VACCINATION
    if kind is AcceptableType.RECOVERY:
        return cert_type is CertificateType.RECOVERY
    if kind is AcceptableType.TEST:
        return cert_type is CertificateType.TEST
    # PCR / RAT refine TEST by the first entry's type-of-test code.
    if cert_type is not CertificateType.TEST or not certificate.tests:
        return False
    return certificate.tests[0].type_of_test == kind.test_type_code


def _engine_type(credential: DecodedCredential) -> CertEngineType:
    cert_type = credential.certificate.certificate_type
    if cert_type is CertificateType.RECOVERY:
        return CertEngineType.RECOVERY
    if cert_type is CertificateType.VACCINATION:
        return CertEngineType.VACCINATION
    return CertEngineType.TEST


def _map_rule_result(result: RuleResult) -> Tuple[ResultType, ResultStatusType]:
    if result == RuleResult.OPEN:
        return ResultType.NOK, ResultStatusType.OPEN
    if result == RuleResult.PASSED:
        return ResultType.OK, ResultStatusType.PASSED
    return ResultType.NOK, ResultStatusType.FAILED


def _rule_identifier(outcome: RuleOutcome) -> ResultTypeIdentifier:
    rule = outcome.rule
    if rule is not None and rule.rule_type == RuleType.ACCEPTANCE:
        # TODO: split TRAVELLER_ACCEPTANCE off once rules carry a traveller sub-type.
        return ResultTypeIdentifier.DESTINATION_ACCEPTANCE
    return ResultTypeIdentifier.ISSUER_INVALIDATION


def _rule_details(outcome: RuleOutcome) -> str:
    rule = outcome.rule
    identifier = rule.identifier if rule is not None else ""
    description = (rule.description_for(RULE_DESCRIPTION_LANGUAGE) if rule is not None else None) or ""
    details = f"{identifier} {description} "
    if outcome.current:
        details += f"{outcome.current} "
    if outcome.validation_errors:
        details += " Exceptions: "
        for error in outcome.validation_errors:
            details += f"{error} "
    return details
