from fastapi import APIRouter
from docimport.api import imports, webhooks

api_router = APIRouter()
api_router.include_router(imports.router, prefix="/imports", tags=["imports"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
