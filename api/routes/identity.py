"""
Identity API endpoints.

Resolve external identifiers to contacts and manage the identity cache:
review unmatched identities, link and unlink them manually.
"""
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from api.services.errors import NotFoundError
from api.services.identifiers import InvalidIdentifierError
from api.services.identity_service import MatchRequest, get_identity_service

router = APIRouter(prefix="/api/identities", tags=["identities"])


class MatchBody(BaseModel):
    """Request body for resolving an identifier."""
    identifier: str = Field(..., min_length=1)
    identifier_type: str
    source: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    source_id: Optional[str] = None
    known_contact_id: Optional[str] = None


class LinkBody(BaseModel):
    contact_id: str = Field(..., min_length=1)


class BulkLinkBody(BaseModel):
    identity_ids: list[str] = Field(..., min_length=1)
    contact_id: str = Field(..., min_length=1)


class IdentityListResponse(BaseModel):
    identities: list[dict]
    count: int
    total: Optional[int] = None


@router.post("/match")
async def match_identifier(body: MatchBody):
    """
    Resolve an identifier to a contact, recording the sighting.

    Returns the cached identity and how it was matched. Unmatched
    identifiers are still recorded so they show up for review.
    """
    try:
        result = get_identity_service().match_or_create(
            MatchRequest(
                identifier=body.identifier,
                identifier_type=body.identifier_type,
                source=body.source,
                display_name=body.display_name,
                source_id=body.source_id,
                known_contact_id=body.known_contact_id,
            )
        )
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return result.to_dict()


@router.get("/unmatched", response_model=IdentityListResponse)
async def list_unmatched(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """Unmatched identities, most frequently seen first."""
    service = get_identity_service()
    identities = service.list_unmatched(limit=limit, offset=offset)
    return IdentityListResponse(
        identities=[i.to_dict() for i in identities],
        count=len(identities),
        total=service.count_unmatched(),
    )


@router.get("/unmatched/count")
async def count_unmatched():
    return {"count": get_identity_service().count_unmatched()}


@router.post("/bulk-link")
async def bulk_link(body: BulkLinkBody):
    """Link several identities to one contact. Nothing is linked if any id is unknown."""
    try:
        linked = get_identity_service().bulk_link_identities(body.identity_ids, body.contact_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"linked": linked, "contact_id": body.contact_id}


@router.get("/contact/{contact_id}", response_model=IdentityListResponse)
async def list_for_contact(contact_id: str):
    """Every identity linked to a contact, across sources."""
    identities = get_identity_service().list_identities_for_contact(contact_id)
    return IdentityListResponse(
        identities=[i.to_dict() for i in identities],
        count=len(identities),
    )


@router.get("/{identity_id}")
async def get_identity(identity_id: str):
    try:
        return get_identity_service().get_identity(identity_id).to_dict()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{identity_id}/link")
async def link_identity(identity_id: str, body: LinkBody):
    """Manually link an identity to a contact (match_type=manual)."""
    try:
        return get_identity_service().link_identity(identity_id, body.contact_id).to_dict()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{identity_id}/unlink")
async def unlink_identity(identity_id: str):
    try:
        return get_identity_service().unlink_identity(identity_id).to_dict()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{identity_id}")
async def delete_identity(identity_id: str):
    try:
        get_identity_service().delete_identity(identity_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"deleted": True, "id": identity_id}
