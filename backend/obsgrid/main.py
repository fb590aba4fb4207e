from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from obsgrid.api.routers import surveys, observations, imports, taxa
from obsgrid.config import CORS_ORIGINS, configure_logging
from obsgrid.db import init_db

app = FastAPI(title="Observation Grid API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"ok": True}


# 初回起動時にログ設定と DB スキーマ作成
@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()


app.include_router(surveys.router,      prefix="/surveys",                           tags=["surveys"])
app.include_router(observations.router, prefix="/surveys/{survey_id}/observations",  tags=["observations"])
app.include_router(imports.router,      prefix="/surveys/{survey_id}/observations",  tags=["imports"])
app.include_router(taxa.router,         prefix="/taxa",                              tags=["taxa"])
