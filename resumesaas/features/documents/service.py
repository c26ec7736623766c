"""
resumesaas/features/documents/service.py

Generated document storage.

Handles:
- Saving feature output (resumes, cover letters, analyses) per user
- Listing a user's documents, newest first, optionally by feature
- Owner-scoped reads and deletes (another user's id reads as not found)

AI suggestions are inline edits to an existing document and are not saved.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, desc, func, insert, select
from sqlalchemy.orm import Session

from resumesaas.core.database import generated_documents, session_scope
from resumesaas.core.errors import NotFoundError
from resumesaas.features.plans import catalog
from resumesaas.models.document import GeneratedDocument

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 300

TITLE_TEMPLATES: Dict[str, str] = {
    catalog.RESUME_GENERATION: "{full_name} - {target_role}",
    catalog.JOB_TAILORING: "Tailored resume",
    catalog.COVER_LETTER_GENERATION: "Cover letter - {company}, {role}",
    catalog.LINKEDIN_OPTIMIZATION: "LinkedIn profile - {target_role}",
    catalog.SALARY_ANALYSIS: "Salary analysis - {role}, {location}",
    catalog.MOCK_INTERVIEW: "Mock interview - {role}",
    catalog.PERSONAL_BRAND_STRATEGY: "Brand strategy - {industry}",
}


def is_saved_feature(feature: str) -> bool:
    return feature in TITLE_TEMPLATES


def document_title(feature: str, fields: Dict[str, Any]) -> str:
    template = TITLE_TEMPLATES.get(feature, feature.replace("_", " ").capitalize())
    try:
        title = template.format(**fields)
    except (KeyError, IndexError):
        title = feature.replace("_", " ").capitalize()
    return title[:MAX_TITLE_LENGTH]


def _row_to_document(row) -> GeneratedDocument:
    created_at = row.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return GeneratedDocument(
        id=row.id,
        user_id=row.user_id,
        feature=row.feature,
        title=row.title,
        content=row.content,
        inputs=row.inputs,
        request_id=row.request_id,
        created_at=created_at,
    )


def save_document(
    user_id: str,
    feature: str,
    content: str,
    inputs: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> GeneratedDocument:
    """
    Store generated content for the user.

    Raises:
        StorageUnavailableError: store unreachable (raised by the session).
    """
    created_at = now or datetime.now(timezone.utc)
    title = document_title(feature, inputs or {})
    with session_scope(session) as s:
        result = s.execute(
            insert(generated_documents).values(
                user_id=user_id,
                feature=feature,
                title=title,
                content=content,
                inputs=inputs,
                request_id=request_id,
                created_at=created_at,
            )
        )
        document_id = result.inserted_primary_key[0]

    logger.info(
        "[documents] document saved",
        extra={"user_id": user_id, "feature": feature, "document_id": document_id},
    )
    return GeneratedDocument(
        id=document_id,
        user_id=user_id,
        feature=feature,
        title=title,
        content=content,
        inputs=inputs,
        request_id=request_id,
        created_at=created_at,
    )


def list_documents(
    user_id: str,
    feature: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[int, List[GeneratedDocument]]:
    """A user's documents, newest first."""
    clause = generated_documents.c.user_id == user_id
    if feature:
        clause = and_(clause, generated_documents.c.feature == feature)
    with session_scope() as s:
        total = s.execute(select(func.count(generated_documents.c.id)).where(clause)).scalar() or 0
        rows = s.execute(
            select(generated_documents)
            .where(clause)
            .order_by(desc(generated_documents.c.created_at), desc(generated_documents.c.id))
            .offset(skip)
            .limit(limit)
        ).all()
        return total, [_row_to_document(row) for row in rows]


def get_document(user_id: str, document_id: int) -> GeneratedDocument:
    with session_scope() as s:
        row = s.execute(
            select(generated_documents).where(
                and_(generated_documents.c.id == document_id, generated_documents.c.user_id == user_id)
            )
        ).first()
    if row is None:
        raise NotFoundError(f"Document {document_id} not found")
    return _row_to_document(row)


def delete_document(user_id: str, document_id: int) -> None:
    """Delete one of the user's documents; usage events are untouched."""
    with session_scope() as s:
        result = s.execute(
            delete(generated_documents).where(
                and_(generated_documents.c.id == document_id, generated_documents.c.user_id == user_id)
            )
        )
        if result.rowcount != 1:
            raise NotFoundError(f"Document {document_id} not found")
    logger.info("[documents] document deleted", extra={"user_id": user_id, "document_id": document_id})
