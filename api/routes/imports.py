"""
Import candidate endpoints.

External records nobody matched (Google contacts, unknown meeting
attendees) wait here for review.
"""
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from api.services.errors import NotFoundError
from api.services.import_service import get_import_service

router = APIRouter(prefix="/api/imports", tags=["imports"])


class LinkBody(BaseModel):
    contact_id: str = Field(..., min_length=1)


@router.get("/")
async def list_candidates(
    source: Optional[str] = Query(default=None, description="Filter by source, e.g. gcontacts or gcal_attendee"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """Unmatched, non-duplicate external records."""
    service = get_import_service()
    candidates = service.list_candidates(source=source, limit=limit, offset=offset)
    return {
        "candidates": [c.to_dict() for c in candidates],
        "count": len(candidates),
        "total": service.count_candidates(source=source),
    }


@router.get("/contact/{contact_id}")
async def list_for_contact(contact_id: str):
    """External records linked to a contact."""
    records = get_import_service().list_for_contact(contact_id)
    return {
        "contact_id": contact_id,
        "records": [r.to_dict() for r in records],
        "count": len(records),
    }


@router.get("/{candidate_id}")
async def get_candidate(candidate_id: str):
    try:
        return get_import_service().get_candidate(candidate_id).to_dict()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{candidate_id}/suggestion")
async def get_suggestion(candidate_id: str):
    """Best CRM contact for a candidate by name and contact-method overlap, if any."""
    try:
        match = get_import_service().suggest(candidate_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "candidate_id": candidate_id,
        "suggestion": match.to_dict() if match else None,
    }


@router.post("/{candidate_id}/link")
async def link_candidate(candidate_id: str, body: LinkBody):
    """Link a candidate to an existing contact, along with its cached identities."""
    try:
        return get_import_service().link(candidate_id, body.contact_id).to_dict()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{candidate_id}/ignore")
async def ignore_candidate(candidate_id: str):
    try:
        return get_import_service().ignore(candidate_id).to_dict()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{candidate_id}")
async def delete_candidate(candidate_id: str):
    try:
        get_import_service().delete(candidate_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"deleted": True, "id": candidate_id}
