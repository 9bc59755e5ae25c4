from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.errors import InvalidRequestError, NotFoundError
from postureguard.domain.models import EvaluationResult, ResultNote
from postureguard.persistence.repos import results as results_repo
from postureguard.services.compliance.verdicts import STATUS_NON_COMPLIANT


async def get_result_for_account(session: AsyncSession, account_id: str, result_id: str) -> EvaluationResult:
    result = await results_repo.get_result(session, result_id)
    if result is None or result.account_id != account_id:
        raise NotFoundError(f"Result {result_id} not found")
    return result


async def acknowledge_result(
    session: AsyncSession,
    result: EvaluationResult,
    *,
    actor_id: str | None,
    note: str | None = None,
) -> EvaluationResult:
    # Only open findings can be acknowledged; the next run clears it once resolved.
    if result.status != STATUS_NON_COMPLIANT:
        raise InvalidRequestError("Only non_compliant results can be acknowledged")
    result.acknowledged = True
    result.acknowledged_at = datetime.now(timezone.utc)
    result.acknowledged_by = actor_id
    result.acknowledged_note = note
    if note:
        await results_repo.add_note(session, result=result, note=note, created_by=actor_id)
    await session.flush()
    return result


async def unacknowledge_result(session: AsyncSession, result: EvaluationResult) -> EvaluationResult:
    result.acknowledged = False
    result.acknowledged_at = None
    result.acknowledged_by = None
    result.acknowledged_note = None
    await session.flush()
    return result


async def add_result_note(
    session: AsyncSession,
    result: EvaluationResult,
    *,
    note: str,
    actor_id: str | None,
) -> ResultNote:
    if not note.strip():
        raise InvalidRequestError("Note text is required")
    return await results_repo.add_note(session, result=result, note=note.strip(), created_by=actor_id)
