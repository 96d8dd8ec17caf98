#!/usr/bin/env python3
"""
Proxmox Manager - FastAPI backend for the dashboard GUI
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from advisor import ensure_model_available
from control_engine import ControlEngine
from errors import (
    AdvisorUnavailable,
    ConfigIOError,
    GatewayError,
    GatewayErrorKind,
    ManagerError,
    NotFoundError,
)
from models import ControlAction

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Module-level engine singleton; set during startup
engine: Optional[ControlEngine] = None
_advisor_ready: bool = False
_advisor_error: str = ""

_SCRIPT_OPERATIONS = {
    "container-fix": "run_container_fix_script",
    "media-services-fix": "run_media_services_fix",
    "hardware-optimization": "run_hardware_optimization",
    "duckdns-update": "update_duckdns",
}

_HOST_OPERATIONS = {
    "update": "update_proxmox_packages",
    "reboot": "reboot_proxmox_host",
    "shutdown": "shutdown_proxmox_host",
}

_GATEWAY_STATUS = {
    GatewayErrorKind.NOT_FOUND: 404,
    GatewayErrorKind.PERMISSION_DENIED: 403,
    GatewayErrorKind.TIMEOUT: 504,
    GatewayErrorKind.COMMAND_FAILED: 502,
}


async def _check_advisor():
    """Check (and pull if needed) the advisor model in a background thread."""
    global _advisor_ready, _advisor_error
    ok, msg = await asyncio.to_thread(ensure_model_available, engine.settings)
    _advisor_ready = ok
    _advisor_error = "" if ok else msg
    if ok:
        logger.info(msg)
    else:
        logger.warning(f"Advisor unavailable, suggestions will be empty: {msg}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global engine
    if engine is None:
        engine = ControlEngine()
    task = asyncio.create_task(_check_advisor())
    yield
    task.cancel()
    engine.close()


app = FastAPI(title="Proxmox Manager Server", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ManagerError)
async def manager_error_handler(request: Request, exc: ManagerError):
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, GatewayError):
        status = _GATEWAY_STATUS[exc.error_kind]
    elif isinstance(exc, ConfigIOError):
        status = 409
    elif isinstance(exc, AdvisorUnavailable):
        status = 503
    else:
        status = 500
    logger.warning(f"{request.method} {request.url.path} -> {status}: {exc.message}")
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": "bad_request", "message": str(exc)})


def _engine() -> ControlEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not ready yet. Please wait.")
    return engine


def _required(payload: dict, key: str):
    value = payload.get(key)
    if value is None:
        raise ValueError(f"Missing field: {key}")
    return value


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "ready": engine is not None,
        "advisor_ready": _advisor_ready,
        "advisor_error": _advisor_error or None,
    }


# ── Reads ─────────────────────────────────────────────────────────────────────

@app.get("/overview")
async def system_overview():
    overview = await asyncio.to_thread(_engine().get_system_overview)
    return overview.to_dict()


@app.get("/maintenance")
async def maintenance_overview():
    overview = await asyncio.to_thread(_engine().get_maintenance_overview)
    return overview.to_dict()


@app.get("/host")
async def host_info():
    info = await asyncio.to_thread(_engine().get_proxmox_host_info)
    return info.to_dict()


@app.get("/cluster")
async def cluster_status():
    status = await asyncio.to_thread(_engine().get_cluster_status)
    return {"status": status}


@app.get("/containers/{container_id}/status")
async def container_status(container_id: int):
    workload = await asyncio.to_thread(_engine().get_container_status, container_id)
    return workload.to_dict()


@app.get("/vms/{vm_id}/status")
async def vm_status(vm_id: int):
    workload = await asyncio.to_thread(_engine().get_vm_status, vm_id)
    return workload.to_dict()


@app.get("/services/{service_name}")
async def service_status(
    service_name: str, container_id: Optional[int] = None, vm_id: Optional[int] = None
):
    service = await asyncio.to_thread(
        _engine().check_service_status, service_name, container_id, vm_id
    )
    return service.to_dict()


@app.get("/binaries/{binary_name}")
async def binary_status(
    binary_name: str, container_id: Optional[int] = None, vm_id: Optional[int] = None
):
    binary = await asyncio.to_thread(_engine().check_binary, binary_name, container_id, vm_id)
    return binary.to_dict()


@app.get("/configs")
async def config_status(path: str, container_id: Optional[int] = None, vm_id: Optional[int] = None):
    config = await asyncio.to_thread(_engine().check_config, path, container_id, vm_id)
    return config.to_dict()


@app.get("/containers/{container_id}")
async def container_details(container_id: int):
    details = await asyncio.to_thread(_engine().get_container_details, container_id)
    return details.to_dict()


@app.get("/containers/{container_id}/configs")
async def container_configs(container_id: int):
    configs = await asyncio.to_thread(_engine().get_container_configs, container_id)
    return {"configs": [c.to_dict() for c in configs]}


@app.get("/containers/{container_id}/config")
async def read_container_config(container_id: int, path: str):
    content = await asyncio.to_thread(_engine().read_container_config, container_id, path)
    return {"path": path, "content": content}


@app.get("/vms/{vm_id}/config")
async def read_vm_config(vm_id: int, path: str):
    content = await asyncio.to_thread(_engine().read_vm_config, vm_id, path)
    return {"path": path, "content": content}


# ── Mutations ─────────────────────────────────────────────────────────────────

@app.put("/containers/{container_id}/config")
async def write_container_config(container_id: int, payload: dict = Body(...)):
    path = _required(payload, "path")
    content = _required(payload, "content")
    message = await asyncio.to_thread(_engine().write_container_config, container_id, path, content)
    return {"success": True, "message": message}


@app.put("/vms/{vm_id}/config")
async def write_vm_config(vm_id: int, payload: dict = Body(...)):
    path = _required(payload, "path")
    content = _required(payload, "content")
    message = await asyncio.to_thread(_engine().write_vm_config, vm_id, path, content)
    return {"success": True, "message": message}


@app.post("/containers/{container_id}/suggestions")
async def config_suggestions(container_id: int, payload: dict = Body(...)):
    path = _required(payload, "path")
    content = _required(payload, "content")
    suggestions = await asyncio.to_thread(
        _engine().get_ai_config_suggestions, container_id, path, content
    )
    return {"suggestions": [s.to_dict() for s in suggestions]}


@app.post("/containers/{container_id}/{action}")
async def control_container(container_id: int, action: str):
    control = ControlAction(action)
    operation = {
        ControlAction.START: _engine().start_container,
        ControlAction.STOP: _engine().stop_container,
        ControlAction.RESTART: _engine().restart_container,
    }[control]
    result = await asyncio.to_thread(operation, container_id)
    return result.to_dict()


@app.post("/vms/{vm_id}/{action}")
async def control_vm(vm_id: int, action: str):
    control = ControlAction(action)
    operation = {
        ControlAction.START: _engine().start_vm,
        ControlAction.STOP: _engine().stop_vm,
        ControlAction.RESTART: _engine().restart_vm,
    }[control]
    result = await asyncio.to_thread(operation, vm_id)
    return result.to_dict()


@app.post("/services/{service_name}/{action}")
async def control_service(service_name: str, action: str, payload: Optional[dict] = Body(None)):
    payload = payload or {}
    message = await asyncio.to_thread(
        _engine().control_service,
        service_name,
        action,
        payload.get("container_id"),
        payload.get("vm_id"),
    )
    return {"success": True, "message": message}


@app.post("/maintenance/install-binaries")
async def install_binaries():
    result = await asyncio.to_thread(_engine().check_and_install_binaries)
    return result.to_dict()


@app.post("/maintenance/fix-services")
async def fix_services():
    result = await asyncio.to_thread(_engine().fix_all_services)
    return result.to_dict()


@app.post("/scripts/{name}")
async def run_script(name: str):
    operation = _SCRIPT_OPERATIONS.get(name)
    if operation is None:
        raise NotFoundError(f"Unknown script: {name}")
    result = await asyncio.to_thread(getattr(_engine(), operation))
    return result.to_dict()


@app.post("/host/{operation}")
async def host_operation(operation: str):
    method = _HOST_OPERATIONS.get(operation)
    if method is None:
        raise NotFoundError(f"Unknown host operation: {operation}")
    logger.info(f"Host operation requested: {operation}")
    result = await asyncio.to_thread(getattr(_engine(), method))
    return result.to_dict()


def main():
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Proxmox Manager HTTP server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    args = parser.parse_args()
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
