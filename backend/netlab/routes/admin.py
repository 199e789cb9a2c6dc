"""Operator routes for reservation housekeeping."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..auth import get_current_user, require_admin
from ..clock import Clock, get_clock
from ..database import get_db
from ..services import reaper

# purpose: on-demand expiry sweeps for operators
# status: active
# depends_on: netlab.services.reaper

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/reservations/reap", response_model=schemas.SweepResultOut)
def reap_reservations(
    dry_run: bool = False,
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
):
    require_admin(user)
    result = reaper.sweep(db, clock=clock, dry_run=dry_run, limit=limit)
    if not dry_run:
        audit.log_action(
            db, user.id, "reservation.reap", details={"count": result.count}, at=clock.now()
        )
        db.commit()
    return schemas.SweepResultOut(
        count=result.count, reservation_ids=result.reservation_ids, dry_run=result.dry_run
    )
