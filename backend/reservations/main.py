import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import settings
from .database import engine, get_db, init_db
from .redis_client import redis_client
from .services.hold_expiry import hold_expiry_loop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db(engine)

    sweep = asyncio.create_task(hold_expiry_loop())
    logger.info("Reservations backend started")
    try:
        yield
    finally:
        sweep.cancel()
        await asyncio.gather(sweep, return_exceptions=True)
        logger.info("Reservations backend stopped")


app = FastAPI(title="Booking Reservations", lifespan=lifespan)


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {
        "db": True,
        "redis": redis_client.ping() if redis_client is not None else None,
    }
