from fastapi import APIRouter
from .v1 import workflow

api_router = APIRouter(prefix="/api", tags=["mediaflow"])

api_router.include_router(workflow.router, prefix="/v1", tags=["workflow"])


@api_router.get("/")
def read_root():
    return {"message": "mediaflow workflow engine"}
