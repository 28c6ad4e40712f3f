"""V1 API router aggregation."""

from fastapi import APIRouter

from controlplane.api.v1.automation import router as automation_router
from controlplane.api.v1.llm import router as llm_router
from controlplane.api.v1.prompts import router as prompts_router
from controlplane.api.v1.providers import router as providers_router
from controlplane.api.v1.realtime import router as realtime_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(providers_router)
v1_router.include_router(prompts_router)
v1_router.include_router(llm_router)
v1_router.include_router(automation_router)
v1_router.include_router(realtime_router)
