# chainattend/main.py
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chainattend.config import settings
from chainattend.core.errors import ChainAttendError, chainattend_error_handler, unhandled_error_handler
from chainattend.database import AsyncSessionLocal, init_db
from chainattend.routers import chains, scan, sessions, snapshots
from chainattend.services.rotation import run_rotation_loop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create DB tables (no migrations)
    await init_db()

    rotation_task = None
    if settings.ROTATION_ENABLED:
        rotation_task = asyncio.create_task(run_rotation_loop(AsyncSessionLocal))

    yield

    if rotation_task is not None:
        rotation_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await rotation_task
        logger.info("Rotation loop stopped")


app = FastAPI(title="ChainAttend - QR chain attendance", version="1.0", lifespan=lifespan)

app.add_exception_handler(ChainAttendError, chainattend_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

# Include Routers
app.include_router(sessions.router)
app.include_router(chains.router)
app.include_router(scan.router)
app.include_router(snapshots.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to ChainAttend"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chainattend.main:app", host="0.0.0.0", port=8000, reload=True)
