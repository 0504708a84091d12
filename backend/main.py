"""PK dataset API. Serve from backend/ with ``uvicorn main:app`` (install the ``serve`` extra)."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from routers.datasets import init_studies, router as datasets_router
from services.study_discovery import discover_studies


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: discover studies; datasets are derived on first request
    print("Discovering studies...")
    studies = discover_studies()
    print(f"Found {len(studies)} studies: {list(studies.keys())}")
    init_studies(studies)
    yield


app = FastAPI(title="PK Analysis Dataset Builder", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(datasets_router)
