"""AMI command dispatch service entrypoint."""

from fastapi import FastAPI

from services.ami.app.db.init_db import init_db
from services.ami.app.routers.audit import router as audit_router
from services.ami.app.routers.command import router as command_router
from services.ami.app.routers.dispatch import router as dispatch_router
from services.ami.app.routers.imports import router as imports_router
from services.ami.app.routers.prepaid import router as prepaid_router

app = FastAPI(title="AMI Command Service")

app.include_router(command_router)
app.include_router(audit_router)
app.include_router(dispatch_router)
app.include_router(prepaid_router)
app.include_router(imports_router)


@app.on_event("startup")
def _startup() -> None:
    init_db()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
