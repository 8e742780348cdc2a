from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inbox.core.config import get_settings
from inbox.db.session import get_session

router = APIRouter(tags=["health"])

# Tables the webhook and outbound paths write to; an unmigrated database fails readiness.
PIPELINE_TABLES = (
    "contacts",
    "conversations",
    "messages",
    "inbound_message_dedup",
    "outbound_jobs",
    "outbound_message_logs",
)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok", "version": get_settings().VERSION}


@router.get("/readyz")
def readyz(session: Session = Depends(get_session)) -> dict:
    try:
        rows = session.execute(
            text(
                """
                SELECT t AS name, to_regclass(t) IS NOT NULL AS present
                FROM unnest(CAST(:tables AS text[])) AS t
                """
            ),
            {"tables": list(PIPELINE_TABLES)},
        ).mappings()
        missing = [r["name"] for r in rows if not r["present"]]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"reason": "schema not migrated", "missing_tables": missing},
            )
        queue = (
            session.execute(
                text(
                    """
                    SELECT count(*) AS queued,
                           EXTRACT(EPOCH FROM now() - min(created_at)) AS oldest_queued_age
                    FROM outbound_jobs
                    WHERE status = 'queued'
                    """
                )
            )
            .mappings()
            .one()
        )
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database not ready",
        ) from e
    age = queue["oldest_queued_age"]
    return {
        "status": "ready",
        "queued_jobs": int(queue["queued"]),
        "oldest_queued_age_seconds": int(age) if age is not None else None,
    }
