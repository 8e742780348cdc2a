from __future__ import annotations

from pydantic import BaseModel


class RunOutboundJobIds(BaseModel):
    processed: list[str]
    failed: list[str]


class RunOutboundResponse(BaseModel):
    processed: int
    failed: int
    job_ids: RunOutboundJobIds
