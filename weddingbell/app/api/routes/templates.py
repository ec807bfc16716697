"""
Template management routes.

Templates are compiled before they are stored; content that does not
compile is rejected with a 400 and never reaches the active set.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from weddingbell.app.api.deps import get_template_engine
from weddingbell.app.models.api.management_schemas import (
    TemplateCreateRequest,
    TemplateImportRequest,
    TemplatePreviewRequest,
    TemplateResponse,
    TemplateUpdateRequest,
)
from weddingbell.app.services.template_engine import TemplateEngine

router = APIRouter()


@router.post(
    "",
    response_model=TemplateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a template"
)
async def create_template(
    request: TemplateCreateRequest,
    engine: TemplateEngine = Depends(get_template_engine)
) -> Dict[str, Any]:
    template = await engine.create_template(
        request.type,
        request.channel,
        request.language or engine.default_language,
        request.content,
        request.metadata,
    )
    return template.to_dict()


@router.post("/preview", summary="Render a template with sample data")
async def preview_template(
    request: TemplatePreviewRequest,
    engine: TemplateEngine = Depends(get_template_engine)
) -> Dict[str, Any]:
    return engine.preview(request.type, request.channel, request.language, request.sample_data)


@router.get("/export", summary="Export active templates")
async def export_templates(
    type: Optional[str] = Query(None, description="Filter by notification type"),
    channel: Optional[str] = Query(None, description="Filter by channel"),
    language: Optional[str] = Query(None, description="Filter by language"),
    engine: TemplateEngine = Depends(get_template_engine)
) -> Dict[str, List[Dict[str, Any]]]:
    filters = {"type": type, "channel": channel, "language": language}
    return {"templates": engine.export_templates(filters)}


@router.post("/import", summary="Import templates")
async def import_templates(
    request: TemplateImportRequest,
    engine: TemplateEngine = Depends(get_template_engine)
) -> Dict[str, Any]:
    """Each template is created independently; failures are reported per item."""
    return await engine.import_templates(request.templates)


@router.put("/{template_id}", response_model=TemplateResponse, summary="Update a template")
async def update_template(
    template_id: str,
    request: TemplateUpdateRequest,
    engine: TemplateEngine = Depends(get_template_engine)
) -> Dict[str, Any]:
    template = await engine.update_template(template_id, request.to_updates())
    return template.to_dict()
