"""
tally.services.batch — Batch Job Result Types
==============================================

Every batch trigger (rollup, freeze, report dispatch) processes a list of
independent *units* and reports back one :class:`BatchResult`.  A unit's
failure is recorded here and never aborts its siblings; only a failure at
the batch boundary (e.g. loading the unit list) propagates as an
exception.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field


class BatchErrorKind(enum.StrEnum):
    NO_SCHEDULES_DUE = "NO_SCHEDULES_DUE"
    RENDER_FAILED = "RENDER_FAILED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    SCHEDULE_UPDATE_FAILED = "SCHEDULE_UPDATE_FAILED"
    UNIT_FAILED = "UNIT_FAILED"


@dataclass(slots=True)
class UnitError:
    """One failure inside a batch, tagged with the unit it belongs to."""

    unit_id: str
    kind: BatchErrorKind
    message: str
    recipient: str | None = None


@dataclass(slots=True)
class BatchResult:
    """Summary of one batch run.

    ``info`` carries non-error notes such as ``NO_SCHEDULES_DUE``; an empty
    run is a success, not a failure.
    """

    job: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[UnitError] = field(default_factory=list)
    info: list[str] = field(default_factory=list)
    units: list[dict] = field(default_factory=list)

    @property
    def nothing_due(self) -> bool:
        return BatchErrorKind.NO_SCHEDULES_DUE in self.info

    @property
    def ok(self) -> bool:
        return not self.errors

    def record_error(
        self,
        unit_id: object,
        kind: BatchErrorKind,
        message: str,
        recipient: str | None = None,
    ) -> None:
        self.errors.append(UnitError(str(unit_id), kind, message, recipient))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["errors"] = [
            {**asdict(err), "kind": str(err.kind)} for err in self.errors
        ]
        data["info"] = [str(note) for note in self.info]
        return data
