"""Exceptions raised while deriving a single record.

Each one aborts only the affected interval or sample; the pipeline turns it
into a ``DerivationFault`` and keeps going.
"""

from __future__ import annotations

from models.records import DerivationFault, FaultKind


class DerivationError(Exception):
    kind: FaultKind

    def __init__(self, detail: str, *, variable: str | None = None):
        super().__init__(detail)
        self.detail = detail
        self.variable = variable

    def to_fault(
        self,
        *,
        subject_id: str | None = None,
        drug: str | None = None,
        record_id: str | None = None,
    ) -> DerivationFault:
        return DerivationFault(
            kind=self.kind,
            subject_id=subject_id,
            drug=drug,
            record_id=record_id,
            variable=self.variable,
            detail=self.detail,
        )


class UnknownFrequencyCode(DerivationError):
    kind = "UnknownFrequencyCode"


class UnresolvedTimestamp(DerivationError):
    kind = "UnresolvedTimestamp"


class InvertedInterval(DerivationError):
    kind = "InvertedInterval"
