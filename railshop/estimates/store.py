"""Estimate store — versioned estimate submissions and their ordered lines.

The store does not know about workflow states; deciding *when* an estimate
may be submitted is the state machine's job.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from railshop.models.enums import EstimateStatus
from railshop.models.estimate import EstimateLine, EstimateSubmission
from railshop.schemas.workflow import EstimateLineInput
from railshop.workflow.errors import ConcurrentModification, NotFound, ValidationError

logger = logging.getLogger(__name__)

_AMOUNT_FIELDS = ("labor_hours", "material_cost", "total_cost")


def _limits(column_name: str, table=EstimateLine.__table__) -> tuple[Decimal, Decimal]:
    """(exclusive upper bound, smallest step) a Numeric column can store."""
    numeric = table.c[column_name].type
    return Decimal(10) ** (numeric.precision - numeric.scale), Decimal(1).scaleb(-numeric.scale)


_LINE_LIMITS = {field: _limits(field) for field in _AMOUNT_FIELDS}
_TOTAL_LIMITS = {
    "labor_hours": _limits("total_labor_hours", EstimateSubmission.__table__),
    "material_cost": _limits("total_material_cost", EstimateSubmission.__table__),
    "total_cost": _limits("total_cost", EstimateSubmission.__table__),
}


class EstimateStore:
    """Creates and reads estimate submissions."""

    async def submit_estimate(
        self,
        db: AsyncSession,
        event_id: uuid.UUID,
        lines: Sequence[EstimateLineInput],
        *,
        submitted_by: str | None = None,
        notes: str | None = None,
        is_final: bool = False,
    ) -> EstimateSubmission:
        """Persist a new submission with the next version number.

        Args:
            db: Database session.
            event_id: Shopping event the estimate belongs to.
            lines: At least one line; amounts must be non-negative and fit
                the stored precision (two decimal places).
            submitted_by: Actor id of the submitter.
            notes: Free-text notes.
            is_final: Tag the submission as a final (post-QA) estimate.

        Returns:
            The new submission in status ``submitted`` with its lines.

        Raises:
            ValidationError: No lines, or an amount that is negative, too large
                or has more than two decimal places.
            ConcurrentModification: A concurrent submission took the version number.
        """
        self._validate_lines(lines)

        version_number = await self._next_version(db, event_id)

        submission = EstimateSubmission(
            shopping_event_id=event_id,
            version_number=version_number,
            is_final=is_final,
            status=EstimateStatus.SUBMITTED.value,
            total_labor_hours=sum((line.labor_hours for line in lines), Decimal("0")),
            total_material_cost=sum((line.material_cost for line in lines), Decimal("0")),
            total_cost=sum((line.total_cost for line in lines), Decimal("0")),
            submitted_by=submitted_by,
            notes=notes,
            lines=[
                EstimateLine(
                    line_number=index,
                    job_code=line.job_code,
                    aar_code=line.aar_code,
                    description=line.description,
                    labor_hours=line.labor_hours,
                    material_cost=line.material_cost,
                    total_cost=line.total_cost,
                )
                for index, line in enumerate(lines, start=1)
            ],
        )
        db.add(submission)
        try:
            await db.flush()
        except IntegrityError as exc:
            if "version_number" not in str(exc.orig):
                raise
            logger.warning("Concurrent estimate submission: event=%s v%d already taken", event_id, version_number)
            raise ConcurrentModification(
                event_id, reason=f"estimate version {version_number} was taken by a concurrent submission"
            ) from exc

        logger.info(
            "Estimate submitted: event=%s v%d lines=%d total=%s final=%s",
            event_id,
            version_number,
            len(lines),
            submission.total_cost,
            is_final,
        )
        return submission

    async def get_submission(self, db: AsyncSession, submission_id: uuid.UUID) -> EstimateSubmission:
        """Return a submission with its lines, or raise NotFound."""
        submission = await db.get(EstimateSubmission, submission_id)
        if submission is None:
            raise NotFound("Estimate submission", submission_id)
        return submission

    async def get_latest_submission(self, db: AsyncSession, event_id: uuid.UUID) -> EstimateSubmission | None:
        """Return the submission with the highest version number, or None."""
        result = await db.execute(
            select(EstimateSubmission)
            .where(EstimateSubmission.shopping_event_id == event_id)
            .order_by(EstimateSubmission.version_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest_final_submission(
        self, db: AsyncSession, event_id: uuid.UUID
    ) -> EstimateSubmission | None:
        """Return the highest-versioned submission tagged as final, or None."""
        result = await db.execute(
            select(EstimateSubmission)
            .where(
                EstimateSubmission.shopping_event_id == event_id,
                EstimateSubmission.is_final.is_(True),
            )
            .order_by(EstimateSubmission.version_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_versions(self, db: AsyncSession, event_id: uuid.UUID) -> list[EstimateSubmission]:
        """All submissions for an event, newest version first."""
        result = await db.execute(
            select(EstimateSubmission)
            .where(EstimateSubmission.shopping_event_id == event_id)
            .order_by(EstimateSubmission.version_number.desc())
        )
        return list(result.scalars().all())

    async def _next_version(self, db: AsyncSession, event_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.coalesce(func.max(EstimateSubmission.version_number), 0)).where(
                EstimateSubmission.shopping_event_id == event_id
            )
        )
        return int(result.scalar_one()) + 1

    @staticmethod
    def _validate_lines(lines: Sequence[EstimateLineInput]) -> None:
        if not lines:
            msg = "An estimate needs at least one line"
            raise ValidationError(msg)
        for index, line in enumerate(lines, start=1):
            for field in _AMOUNT_FIELDS:
                value = getattr(line, field)
                if value is None:
                    msg = f"Line {index}: {field} is required"
                    raise ValidationError(msg, line_number=index, field=field)
                if not value.is_finite():
                    msg = f"Line {index}: {field} must be a finite number"
                    raise ValidationError(msg, line_number=index, field=field)
                if value < 0:
                    msg = f"Line {index}: {field} must be non-negative (got {value})"
                    raise ValidationError(msg, line_number=index, field=field)
                _check_fits(value, _LINE_LIMITS[field], f"Line {index}: {field}", line_number=index, field=field)

        for field in _AMOUNT_FIELDS:
            total = sum((getattr(line, field) for line in lines), Decimal("0"))
            _check_fits(total, _TOTAL_LIMITS[field], f"Estimate total {field}", field=field)


def _check_fits(value: Decimal, limits: tuple[Decimal, Decimal], label: str, **details: object) -> None:
    bound, step = limits
    if value >= bound:
        msg = f"{label} must be below {bound} (got {value})"
        raise ValidationError(msg, **details)
    if value % step:
        msg = f"{label} allows at most {-step.as_tuple().exponent} decimal places (got {value})"
        raise ValidationError(msg, **details)


estimate_store = EstimateStore()
