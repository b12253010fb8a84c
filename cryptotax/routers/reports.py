"""
cryptotax/routers/reports.py

Downloadable reports.
  GET /form8949?year=&method=   Form 8949 lines as CSV
"""

from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from cryptotax.database import get_db
from cryptotax.models.user import User
from cryptotax.routers.transaction import resolve_method, resolve_year
from cryptotax.services import gains
from cryptotax.services.form_8949 import generate_form_8949_csv
from cryptotax.utils.auth import get_current_user

reports_router = APIRouter(tags=["reports"])


@reports_router.get("/form8949")
def get_form_8949_csv(
    year: Optional[int] = None,
    method: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    tax_year = resolve_year(year)
    tax_method = resolve_method(method, current_user)
    results = gains.compute_matches(db, current_user.id, tax_method)
    csv_text = generate_form_8949_csv(gains.collect_matches(results), tax_year)

    return Response(
        content=csv_text.encode("utf-8"),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="Form8949_{tax_year}_{tax_method.value}.csv"'},
    )
