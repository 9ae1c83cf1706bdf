from fastapi import APIRouter

from . import scheduling, system

api_router = APIRouter()

api_router.include_router(system.router, prefix="/system", tags=["system"])
api_router.include_router(scheduling.router, prefix="/scheduling", tags=["scheduling"])
