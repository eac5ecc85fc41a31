from pydantic import BaseModel
from typing import Any, Dict, Optional
from datetime import datetime


class EnqueueOut(BaseModel):
    job_id: str
    queue: str


class JobOut(BaseModel):
    job_id: str
    queue: str
    name: str
    state: str
    attempts_made: int
    max_attempts: int
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]]
    last_error: Optional[str]
    run_at: Optional[datetime]
    finished_at: Optional[datetime]


class QueueCountsOut(BaseModel):
    queue: str
    concurrency: int
    waiting: int
    active: int
    completed: int
    failed: int


class HealthOut(BaseModel):
    status: str
    workers_running: bool
