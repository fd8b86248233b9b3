import logging
import time
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from integrations.core.config import settings
from integrations.core.logging import set_request_id, setup_logging
from integrations.db.session import init_db
from integrations.routers import connections, health, internal, notifications
from integrations.services.crypto import get_cipher

get_cipher()  # rejects a bad ENCRYPTION_KEY at startup
setup_logging(settings.LOG_DIR, settings.LOG_LEVEL)

app = FastAPI(title="Integration Credentials Service", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        set_request_id(rid)
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = int((time.perf_counter() - start) * 1000)
        host = request.client.host if request.client else "-"
        logging.getLogger("integrations.request").info(
            f"{host} {request.method} {request.url.path} {response.status_code} {dur_ms}ms",
            extra={"method": request.method, "path": str(request.url.path),
                   "status": response.status_code, "dur_ms": dur_ms},
        )
        response.headers["X-Request-ID"] = rid
        return response


app.add_middleware(RequestIdMiddleware)

app.include_router(health.router)
app.include_router(internal.router)
app.include_router(connections.router)
app.include_router(notifications.router)


@app.on_event("startup")
def on_startup():
    init_db()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("integrations.main:app", host="0.0.0.0", port=8000, reload=True)
