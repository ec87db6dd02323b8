"""
Steward FastAPI application.

Provides a REST API over the registry and the lifecycle workflows: list and
inspect applications, create/import/delete them, run full setup, change ports
and server types, control services, and rebuild the firewall. The process
holds the registry lock for its whole lifetime and runs one workflow at a time.
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from . import __version__
from .config import ensure_unprivileged, load_config
from .errors import PreconditionError, StewardError, ValidationError
from .log import configure_logging
from .models import initialize_db, recent_runs
from .orchestrator import LifecycleOrchestrator
from .outcome import WorkflowOutcome

logger = logging.getLogger(__name__)

# Workflows are serialized; the registry assumes a single writer.
workflow_lock = threading.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    ensure_unprivileged()
    config = load_config()
    configure_logging(config)
    initialize_db(config)

    orchestrator = LifecycleOrchestrator(config)
    with orchestrator.registry.lock():
        logger.info("Starting steward API...")
        app.state.orchestrator = orchestrator
        yield
        logger.info("Shutting down steward API...")


app = FastAPI(
    title="Steward",
    description="Multi-application nginx/systemd manager",
    version=__version__,
    lifespan=lifespan,
)


def get_orchestrator(request: Request) -> LifecycleOrchestrator:
    return request.app.state.orchestrator


def _run(func, *args, **kwargs) -> dict:
    """Run a workflow under the lock, mapping steward errors to HTTP errors."""
    with workflow_lock:
        try:
            result = func(*args, **kwargs)
        except PreconditionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StewardError as e:
            raise HTTPException(status_code=500, detail=str(e))
    if isinstance(result, WorkflowOutcome):
        return result.to_dict()
    return result


def _require_app(orchestrator: LifecycleOrchestrator, name: str):
    if name not in orchestrator.index():
        raise HTTPException(status_code=404, detail=f"Application '{name}' not found")


# Pydantic models for API
class AppCreate(BaseModel):
    name: str = Field(..., description="Unique application name ([A-Za-z0-9_-]+)")


class AppImport(BaseModel):
    name: str = Field(..., description="Name to register the application as")
    path: str = Field(..., description="Absolute path to the existing application directory")
    server_type: str = Field("gunicorn", description="gunicorn or flask")
    port: Optional[int] = Field(None, description="Port to assign (defaults to DEFAULT_PORT)")
    provision: bool = Field(False, description="Create the systemd service and nginx site now")


class SetupRequest(BaseModel):
    port_choice: str = Field("default", description="default, auto-5000, auto-8000, custom or current")
    port: Optional[int] = Field(None, description="Port for the custom choice")


class PortUpdate(BaseModel):
    port: int


class ServerTypeUpdate(BaseModel):
    server_type: str


class CurrentUpdate(BaseModel):
    name: str


# Applications
@app.get("/api/apps")
def list_apps(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    """List registered applications with their records."""
    index = orchestrator.index()
    return {
        "current": index.current,
        "apps": [
            app.model_dump(mode="json")
            for app in orchestrator.registry.applications(index)
        ],
    }


@app.get("/api/apps/{name}")
def get_app(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    _require_app(orchestrator, name)
    app_record = orchestrator.registry.get(name)
    if app_record is None:
        raise HTTPException(status_code=404, detail=f"Application '{name}' has no record")
    return app_record.model_dump(mode="json")


@app.post("/api/apps")
def create_app(data: AppCreate, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    """Create a new application and make it current."""
    return _run(orchestrator.create, data.name)


@app.post("/api/apps/import")
def import_app(data: AppImport, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return _run(
        orchestrator.import_app,
        data.path,
        data.name,
        server_type=data.server_type,
        port=data.port,
        provision=data.provision,
    )


@app.post("/api/apps/{name}/setup")
def full_setup(
    name: str,
    data: SetupRequest,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
):
    """Run full setup for an application."""
    _require_app(orchestrator, name)
    return _run(orchestrator.full_setup, name, data.port_choice, data.port)


@app.put("/api/apps/{name}/port")
def change_port(name: str, data: PortUpdate, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    _require_app(orchestrator, name)
    return _run(orchestrator.change_port, name, data.port)


@app.put("/api/apps/{name}/server-type")
def set_server_type(
    name: str,
    data: ServerTypeUpdate,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
):
    _require_app(orchestrator, name)
    return _run(orchestrator.set_server_type, name, data.server_type)


@app.delete("/api/apps/{name}")
def delete_app(
    name: str,
    confirm: bool = Query(False, description="Must be true to actually delete"),
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
):
    """Delete an application and tear down its service, site and firewall rule."""
    _require_app(orchestrator, name)
    return _run(orchestrator.delete, name, confirm=confirm)


@app.post("/api/current")
def set_current(data: CurrentUpdate, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    _require_app(orchestrator, data.name)
    return _run(orchestrator.switch, data.name)


# Service control
@app.post("/api/apps/{name}/{action}")
def service_action(name: str, action: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    """Start, stop or restart an application's systemd unit."""
    if action not in ("start", "stop", "restart"):
        raise HTTPException(status_code=404, detail=f"Unknown action '{action}'")
    _require_app(orchestrator, name)
    return _run(orchestrator.service_action, name, action)


@app.get("/api/apps/{name}/service")
def service_status(name: str, orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    _require_app(orchestrator, name)
    return _run(orchestrator.service_action, name, "status")


# Fleet
@app.get("/api/status")
def get_status(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    """Get overview of all applications."""
    rows = orchestrator.status_overview()
    return {
        "current": orchestrator.index().current,
        "apps": rows,
        "total": len(rows),
        "active": sum(1 for r in rows if r.get("stage") == "active"),
    }


@app.post("/api/firewall/rebuild")
def rebuild_firewall(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator.rebuild_firewall)


@app.get("/api/history")
def get_history(
    application: Optional[str] = Query(None, description="Filter by application"),
    limit: int = Query(50, ge=1, le=500),
):
    """Recent workflow runs."""
    return [run.to_dict() for run in recent_runs(application, limit)]
