"""
Saved document routes.

- GET /api/documents: the caller's generated documents, newest first
- GET /api/documents/{document_id}: one document with its content
- DELETE /api/documents/{document_id}: remove a document

Documents belong to their creator; other users' ids return 404.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from resumesaas.core.auth import get_current_user_id
from resumesaas.features.documents.service import delete_document, get_document, list_documents

router = APIRouter(prefix="/api/documents", tags=["documents"])


class DocumentSummary(BaseModel):
    id: int
    feature: str
    title: str
    created_at: datetime


class DocumentListResponse(BaseModel):
    total: int
    documents: List[DocumentSummary]
    has_more: bool


class DocumentResponse(DocumentSummary):
    content: str
    inputs: Optional[Dict[str, Any]] = None


@router.get("", response_model=DocumentListResponse)
def read_documents(
    feature: Optional[str] = Query(None, max_length=100),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    total, documents = list_documents(user_id, feature=feature, skip=skip, limit=limit)
    return DocumentListResponse(
        total=total,
        documents=[DocumentSummary(**doc.model_dump(include=set(DocumentSummary.model_fields))) for doc in documents],
        has_more=(skip + limit) < total,
    )


@router.get("/{document_id}", response_model=DocumentResponse)
def read_document(document_id: int, user_id: str = Depends(get_current_user_id)):
    document = get_document(user_id, document_id)
    return DocumentResponse(**document.model_dump(include=set(DocumentResponse.model_fields)))


@router.delete("/{document_id}")
def remove_document(document_id: int, user_id: str = Depends(get_current_user_id)):
    delete_document(user_id, document_id)
    return {"success": True, "id": document_id}
