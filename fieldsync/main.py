from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from fieldsync.config import Settings, settings
from fieldsync.db import Base, SessionLocal, engine
from fieldsync.log import configure_logging
from fieldsync.schemas import SyncBatchRequest
from fieldsync.sync import SyncCoordinator


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level, json_format=settings.log_json)
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="fieldsync", lifespan=lifespan)


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings() -> Settings:
    return settings


def get_vendor_identity(
    x_vendor_id: Optional[int] = Header(default=None),
    config: Settings = Depends(get_settings),
) -> Optional[int]:
    """Vendor identity vouched for by the authentication layer in front of us."""
    if x_vendor_id is None and config.require_vendor_identity:
        raise HTTPException(status_code=401, detail="vendor identity required")
    return x_vendor_id


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.post("/api/sync/bulk", tags=["Sync"])
def sync_bulk(
    payload: SyncBatchRequest,
    vendor_id: Optional[int] = Depends(get_vendor_identity),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict:
    coordinator = SyncCoordinator(
        db,
        item_timeout_seconds=config.item_timeout_seconds,
        allow_negative_stock=config.allow_negative_stock,
        invoice_number_attempts=config.invoice_number_attempts,
    )
    return coordinator.process(payload, vendor_id=vendor_id)
