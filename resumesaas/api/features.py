"""
Metered feature endpoints.

Every route goes through the access facade (run_metered): credits are
debited before the LLM call and refunded if the call or the document save
fails. Generated documents are kept for the documents routes.

Routes are plain `def` so the ledger transaction and the Groq call run in
the worker threadpool, not on the event loop.
"""

from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from resumesaas.core.auth import get_current_user_id
from resumesaas.core.logging import get_request_id
from resumesaas.features.access.service import run_metered
from resumesaas.features.documents.service import is_saved_feature, save_document
from resumesaas.features.generation.service import TextGenerator, get_text_generator
from resumesaas.features.plans import catalog

router = APIRouter(prefix="/api", tags=["features"])


class ResumeRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    target_role: str = Field(..., min_length=1, max_length=200)
    experience: str = Field(..., min_length=1, max_length=20000)
    skills: List[str] = []
    education: Optional[str] = Field(None, max_length=5000)


class TailorRequest(BaseModel):
    resume_text: str = Field(..., min_length=1, max_length=30000)
    job_description: str = Field(..., min_length=1, max_length=20000)


class CoverLetterRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    company: str = Field(..., min_length=1, max_length=200)
    role: str = Field(..., min_length=1, max_length=200)
    resume_summary: Optional[str] = Field(None, max_length=10000)
    job_description: Optional[str] = Field(None, max_length=20000)


class LinkedInRequest(BaseModel):
    target_role: str = Field(..., min_length=1, max_length=200)
    current_headline: Optional[str] = Field(None, max_length=300)
    about: Optional[str] = Field(None, max_length=5000)
    experience: Optional[str] = Field(None, max_length=20000)


class SalaryRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=200)
    location: str = Field(..., min_length=1, max_length=200)
    years_experience: int = Field(0, ge=0, le=60)
    skills: List[str] = []


class MockInterviewRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=200)
    company: Optional[str] = Field(None, max_length=200)
    level: Optional[str] = Field(None, max_length=100)


class BrandStrategyRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    industry: str = Field(..., min_length=1, max_length=200)
    goals: str = Field(..., min_length=1, max_length=5000)


class SuggestionsRequest(BaseModel):
    section: str = Field(..., min_length=1, max_length=100)
    content: str = Field(..., min_length=1, max_length=20000)


def _serve(user_id: str, feature: str, body: BaseModel, generator: TextGenerator) -> Dict[str, Any]:
    fields = body.model_dump()
    request_id = get_request_id()

    def work() -> Tuple[str, Optional[int]]:
        # Saving is part of the metered work: a failed save refunds the debit
        content = generator.generate(feature, fields)
        if not is_saved_feature(feature):
            return content, None
        document = save_document(user_id, feature, content, inputs=fields, request_id=request_id)
        return content, document.id

    (output, document_id), result = run_metered(
        user_id,
        feature,
        work,
        metadata={"request_id": request_id},
    )
    return {
        "data": {"feature": feature, "content": output, "documentId": document_id},
        "creditsRemaining": result.remaining,
    }


@router.post("/generate-resume")
def generate_resume(
    body: ResumeRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    return _serve(user_id, catalog.RESUME_GENERATION, body, generator)


@router.post("/tailor-resume")
def tailor_resume(
    body: TailorRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    return _serve(user_id, catalog.JOB_TAILORING, body, generator)


@router.post("/cover-letter")
def cover_letter(
    body: CoverLetterRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    return _serve(user_id, catalog.COVER_LETTER_GENERATION, body, generator)


@router.post("/linkedin/optimize")
def linkedin_optimize(
    body: LinkedInRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    return _serve(user_id, catalog.LINKEDIN_OPTIMIZATION, body, generator)


@router.post("/salary-analysis")
def salary_analysis(
    body: SalaryRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    return _serve(user_id, catalog.SALARY_ANALYSIS, body, generator)


@router.post("/mock-interview")
def mock_interview(
    body: MockInterviewRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    return _serve(user_id, catalog.MOCK_INTERVIEW, body, generator)


@router.post("/personal-brand/strategy")
def personal_brand_strategy(
    body: BrandStrategyRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    return _serve(user_id, catalog.PERSONAL_BRAND_STRATEGY, body, generator)


@router.post("/ai-suggestions")
def ai_suggestions(
    body: SuggestionsRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
):
    return _serve(user_id, catalog.AI_SUGGESTIONS, body, generator)
