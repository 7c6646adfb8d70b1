# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Ordered, append-only collection of validation results."""

from __future__ import annotations

from typing import List

from app.dcc.models import ResultStatusType, ResultType, ResultTypeIdentifier, ValidationResult

__all__ = ["ResultCollector"]


class ResultCollector:
    """Collects results in stage execution order for one validation call."""

    def __init__(self) -> None:
        self._results: List[ValidationResult] = []

    def __len__(self) -> int:
        return len(self._results)

    def add(
        self,
        result: ResultType,
        type: ResultStatusType,
        identifier: ResultTypeIdentifier,
        details: str,
    ) -> ValidationResult:
        entry = ValidationResult(result=result, type=type, identifier=identifier, details=details)
        self._results.append(entry)
        return entry

    def passed(self, identifier: ResultTypeIdentifier, details: str) -> ValidationResult:
        return self.add(ResultType.OK, ResultStatusType.PASSED, identifier, details)

    def failed(
        self,
        details: str,
        identifier: ResultTypeIdentifier = ResultTypeIdentifier.TECHNICAL_VERIFICATION,
    ) -> ValidationResult:
        return self.add(ResultType.NOK, ResultStatusType.FAILED, identifier, details)

    def finalize(self) -> List[ValidationResult]:
        """Return the results, never empty."""
        if not self._results:
            self.passed(ResultTypeIdentifier.TECHNICAL_VERIFICATION, "OK")
        return list(self._results)
