from __future__ import annotations

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..domain.models import utc_now_iso
from ..infrastructure.state_store import get_state_store
from ..observability.metrics import metrics_middleware_factory
from .routers.scaffolder import router as scaffolder_router
from .routers.status import router as status_router

load_dotenv()  # provider keys (OPENAI_API_KEY, XAI_API_KEY, ...) and SCAFFOLDER_* settings

app = FastAPI(title="Scaffolder Orchestration API", version="0.1.0")

app.middleware("http")(metrics_middleware_factory())

app.include_router(scaffolder_router)
app.include_router(status_router)
app.include_router(scaffolder_router, prefix="/api")
app.include_router(status_router, prefix="/api")

# CORS (for Next.js dev server on localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": "Scaffolder Orchestration API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": utc_now_iso(),
        "components": {
            "api": "ok",
            "store": type(get_state_store()).__name__,
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "src.scaffolder.api.main:app",
        host=os.getenv("SCAFFOLDER_HOST", "127.0.0.1"),
        port=int(os.getenv("SCAFFOLDER_PORT", "8000")),
    )
