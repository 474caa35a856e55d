from __future__ import annotations

import uvicorn
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from stratus.api import instances, pool
from stratus.api.utils import register_exception_handlers
from stratus.logging_config import configure_logging

configure_logging()

app = FastAPI(
    title="Stratus",
    description="Provisions isolated per-tenant application instances on shared and dedicated infrastructure",
    version="0.1.0",
)


@app.get("/", include_in_schema=False)
def root() -> RedirectResponse:
    """Redirect root URL to Swagger UI docs."""
    return RedirectResponse(url="/docs")


app.include_router(instances.router)
app.include_router(pool.router)

register_exception_handlers(app)

if __name__ == "__main__":
    uvicorn.run("stratus.main:app", host="0.0.0.0", port=8001, log_level="info")
