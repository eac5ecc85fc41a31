from fastapi import APIRouter
from wavmedia.api.v1 import jobs

router = APIRouter()
router.include_router(jobs.router, tags=["jobs"])
