import uuid
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.v1.cells import cell_view
from app.api.v1.participants import get_db, require_admin
from app.services import evaluator, timers


router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/timers/run")
def run_timers(db: Session = Depends(get_db)) -> dict[str, Any]:
    """Cron entry point: process every due reservation, grace window, deadline and accumulation."""
    return timers.process_due(db)


@router.post("/cells/{cell_id}/finalize")
def force_finalize(cell_id: uuid.UUID, db: Session = Depends(get_db)) -> dict[str, Any]:
    result = evaluator.finalize_cell(db, cell_id, forced=True)
    cell = evaluator.get_cell(db, cell_id)
    return {
        "finalized": result is not None,
        "cell": cell_view(db, cell),
    }
