from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..schemas.crew import EmployeeAvailability, EmployeeWorkload
from ..services.crew_roster import CrewRoster


router = APIRouter(prefix="/crew", tags=["crew"])


@router.get("/availability", response_model=List[EmployeeAvailability])
def crew_availability(
    day: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
    _=Depends(require_permissions("crew:read", "orders:read")),
):
    return CrewRoster(db).availability(day)


@router.get("/workload", response_model=List[EmployeeWorkload])
def crew_workload(
    start: date = Query(...),
    end: date = Query(...),
    db: Session = Depends(get_db),
    _=Depends(require_permissions("crew:read", "orders:read")),
):
    return CrewRoster(db).workload(start, end)
