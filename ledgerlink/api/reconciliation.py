"""Reconciliation run API routes."""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ledgerlink.api.deps import get_run_history, get_runner
from ledgerlink.models.reconciliation import ReconciliationRun, RunStatus
from ledgerlink.models.requests import ReconciliationRunRequest
from ledgerlink.services.errors import FetchError, RunNotFoundError, handle_safely, to_http_exception
from ledgerlink.services.reconciliation_runner import ReconciliationRunner
from ledgerlink.state.run_history import RunHistory

router = APIRouter(prefix="/v1/reconciliation", tags=["reconciliation"])


@router.post("/runs", response_model=ReconciliationRun)
@handle_safely("run")
async def start_run(
    payload: ReconciliationRunRequest,
    runner: ReconciliationRunner = Depends(get_runner),
):
    """
    Run the matching engine over the candidate store.

    With ``dry_run`` nothing is written; the response reports what would
    have been matched. A fetch failure aborts the run and returns 502 with
    the partial statistics.
    """
    run = await runner.run(payload)
    if run.status == RunStatus.FAILED:
        error = FetchError("store", run.error_messages[0] if run.error_messages else "Fetch failed")
        error.context["run"] = run.model_dump(mode="json")
        raise to_http_exception(error)
    return run


@router.get("/runs")
def list_runs(
    limit: int = Query(default=50, ge=1, le=500),
    status: Optional[str] = None,
    history: RunHistory = Depends(get_run_history),
):
    return {"runs": history.list_runs(limit=limit, status=status)}


@router.get("/runs/{run_id}")
def get_run(run_id: str, history: RunHistory = Depends(get_run_history)):
    run = history.get_run(run_id)
    if not run:
        raise to_http_exception(RunNotFoundError(run_id))
    return run


@router.get("/stats")
def run_stats(history: RunHistory = Depends(get_run_history)):
    return history.get_run_stats()
