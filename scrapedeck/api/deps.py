from typing import Any

from fastapi import Header, HTTPException

from scrapedeck.core.errors import job_not_found
from scrapedeck.models import Job
from scrapedeck.services.repository import Collection


def get_user_id(x_user_id: str = Header(..., min_length=1, max_length=64)) -> str:
    """Caller identity; authentication happens upstream."""
    return x_user_id.strip()


def load_owned(collection: Collection, row_id: int, user_id: str, label: str = "Row") -> Any:
    row = collection.find(row_id)
    if row is None or row.user_id != user_id:
        if collection.model is Job:
            raise job_not_found(row_id)
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row
