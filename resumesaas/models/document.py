"""
resumesaas/models/document.py

GeneratedDocument model: feature output saved for the user who paid for it.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class GeneratedDocument(BaseModel):
    """
    A resume, cover letter or other generated text owned by one user.

    inputs holds the request fields the content was generated from, so the
    client can reopen the form that produced it.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    feature: str
    title: str
    content: str
    inputs: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None
    created_at: datetime
