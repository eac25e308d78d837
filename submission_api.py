"""
Exam Submission API — Main Application
FastAPI application that validates pre-computed exam results, stores them
exactly once per attempt, and falls back to server-side scoring when needed.
"""

from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database.database import engine, Base
from database import models  # noqa: F401  (registers tables on Base)
from routers import submissions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables."""
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Exam Submission API",
    description="Validation, idempotent storage and fallback scoring for exam submissions",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Routers ───────────────────────────────────────────────────────────────────

app.include_router(submissions.router)        # /submissions, /submissions/metrics/*


@app.get("/")
def root():
    return {
        "name": "Exam Submission API",
        "version": "1.0.0",
        "status": "Online",
        "endpoints": {
            "docs": "/docs",
            "submit": "/submissions",
            "metrics": "/submissions/metrics",
        },
    }
