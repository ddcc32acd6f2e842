"""
Standards Routes - read-only view of the biomarker standards table.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from backend.core.database import get_session
from backend.models.db import BiomarkerStandardRecord

router = APIRouter(prefix="/standards", tags=["Standards"])


@router.get("")
def list_standards(
    category: Optional[str] = Query(None, description="Filter by category"),
    session: Session = Depends(get_session)
):
    """List canonical biomarker standards."""
    query = select(BiomarkerStandardRecord).order_by(BiomarkerStandardRecord.code)
    if category:
        query = query.where(BiomarkerStandardRecord.category == category)
    standards = session.exec(query).all()
    return {"count": len(standards), "standards": standards}


@router.get("/{code}")
def get_standard(code: str, session: Session = Depends(get_session)):
    standard = session.exec(
        select(BiomarkerStandardRecord).where(BiomarkerStandardRecord.code == code)
    ).first()
    if not standard:
        raise HTTPException(status_code=404, detail="Standard not found")
    return standard
