"""Properties router."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ava.core.deps import get_db
from ava.schemas.property import PropertyRead, PropertyUpsert
from ava.services import property_service

router = APIRouter()


@router.get("", response_model=list[PropertyRead])
def list_properties(db: Session = Depends(get_db)):
    return property_service.list_properties(db)


@router.post("", response_model=PropertyRead)
def upsert_property(body: PropertyUpsert, db: Session = Depends(get_db)):
    try:
        return property_service.upsert_property(db, body.slug, body.address)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
