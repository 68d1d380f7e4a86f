from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings
from core.db import close_db, connect_db, ensure_indexes, get_db
from core.logging_config import setup_logging

from routers import health, ingest, journals, options, sessions


setup_logging(settings.LOG_LEVEL)

app = FastAPI(title="TradeJournal API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    await connect_db()
    await ensure_indexes(get_db())


@app.on_event("shutdown")
async def shutdown():
    await close_db()


app.include_router(health.router)
app.include_router(journals.router)
app.include_router(ingest.router)
app.include_router(sessions.router)
app.include_router(options.router)


@app.get("/")
async def root():
    return {"ok": True}
