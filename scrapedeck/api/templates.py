from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from scrapedeck.api.deps import get_user_id
from scrapedeck.db.session import get_db
from scrapedeck.services.repository import Repository, row_to_dict
from scrapedeck.services.templates import (
    JOB_TEMPLATES,
    TEMPLATE_CATEGORIES,
    create_job_from_template,
    get_template_by_id,
    get_templates_by_category,
)

router = APIRouter(prefix="/templates", tags=["templates"])


class TemplateJobRequest(BaseModel):
    name: str | None = None
    url: str | None = None
    ai_prompt: str | None = None
    use_vision: bool | None = None
    ai_model: str | None = None


@router.get("")
def list_templates(category: str | None = Query(default=None)):
    templates = get_templates_by_category(category) if category else JOB_TEMPLATES
    return {
        "ok": True,
        "categories": [
            {"id": c.id, "name": c.name, "description": c.description, "icon": c.icon}
            for c in TEMPLATE_CATEGORIES
        ],
        "templates": [t.to_dict() for t in templates],
    }


@router.get("/{template_id}")
def get_template(template_id: str):
    template = get_template_by_id(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return {"ok": True, "template": template.to_dict()}


@router.post("/{template_id}/jobs")
def create_job_from(
    template_id: str,
    req: TemplateJobRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    template = get_template_by_id(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")

    fields = create_job_from_template(template, req.model_dump(exclude_none=True))
    job = Repository(db).jobs.create(user_id=user_id, **fields)
    return {"ok": True, "job": row_to_dict(job)}
