from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .csv_inventory import import_inventory_csv
from .errors import ServerForgeError
from .schemas import (
    AddComponentRequest,
    CloneConfigurationRequest,
    Component,
    ComponentStatus,
    CreateConfigurationRequest,
    StatusChangeRequest,
)
from .service import ConfigurationAssembler

logger = logging.getLogger(__name__)

ERROR_STATUS: Dict[str, int] = {
    "not_found": 404,
    "conflict": 409,
    "compatibility_blocked": 422,
    "capacity_exhausted": 409,
    "validation_failed": 422,
    "permission_denied": 403,
    "oracle_unavailable": 503,
}


def _bootstrap_inventory(engine: ConfigurationAssembler, settings: Settings) -> None:
    # 只在库存为空时从 CSV 导入，避免覆盖运行中的占用状态
    if engine.list_components():
        return
    if not settings.inventory_path.exists():
        logger.warning("inventory file %s not found, starting with an empty inventory", settings.inventory_path)
        return
    result = import_inventory_csv(engine.db, settings.inventory_path)
    logger.info("inventory bootstrapped: %d components loaded", result["inserted"])


def create_app(assembler: ConfigurationAssembler | None = None) -> FastAPI:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if assembler is None:
        engine = ConfigurationAssembler.from_settings(settings)
        _bootstrap_inventory(engine, settings)
    else:
        engine = assembler

    app = FastAPI(title="ServerForge｜服务器配置装配")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.assembler = engine

    @app.exception_handler(ServerForgeError)
    def handle_engine_error(request: Request, exc: ServerForgeError):
        status_code = ERROR_STATUS.get(exc.kind, 400)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.reason)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # === 库存 ===

    @app.get("/api/components")
    def list_components(component_type: Optional[str] = None, status: Optional[ComponentStatus] = None):
        return [c.model_dump() for c in engine.list_components(component_type, status)]

    @app.post("/api/components", status_code=201)
    def provision_component(payload: Component):
        return engine.provision_component(payload).model_dump()

    @app.get("/api/components/{component_type}/{component_id}")
    def get_component(component_type: str, component_id: str):
        return engine.get_component(component_type, component_id).model_dump()

    # === 配置 ===

    @app.get("/api/configurations")
    def list_configurations():
        return [c.model_dump() for c in engine.list_configurations()]

    @app.post("/api/configurations", status_code=201)
    def create_configuration(payload: CreateConfigurationRequest):
        config = engine.create_configuration(
            payload.name,
            mode=payload.mode,
            created_by=payload.created_by,
            description=payload.description,
        )
        return config.model_dump()

    @app.get("/api/configurations/{config_id}")
    def get_configuration(config_id: str):
        config = engine.get_configuration(config_id)
        return {**config.model_dump(), "slots": engine.slot_state(config_id).model_dump()}

    @app.delete("/api/configurations/{config_id}")
    def delete_configuration(config_id: str, privileged: bool = False):
        engine.delete_configuration(config_id, privileged=privileged)
        return {"success": True, "config_id": config_id}

    @app.post("/api/configurations/{config_id}/clone", status_code=201)
    def clone_configuration(config_id: str, payload: CloneConfigurationRequest):
        clone = engine.clone_configuration(
            config_id,
            name=payload.name,
            mode=payload.mode,
            created_by=payload.created_by,
        )
        return clone.model_dump()

    @app.post("/api/configurations/{config_id}/components")
    def add_component(config_id: str, payload: AddComponentRequest, privileged: bool = False):
        result = engine.add_component(
            config_id,
            payload.component_type,
            payload.component_id,
            quantity=payload.quantity,
            slot_hint=payload.slot_hint,
            override=payload.override,
            privileged=privileged,
        )
        return result.model_dump()

    @app.delete("/api/configurations/{config_id}/components/{component_type}/{component_id}")
    def remove_component(config_id: str, component_type: str, component_id: str, privileged: bool = False):
        return engine.remove_component(config_id, component_type, component_id, privileged=privileged).model_dump()

    @app.post("/api/configurations/{config_id}/validate")
    def validate(config_id: str):
        return engine.validate(config_id).model_dump()

    @app.post("/api/configurations/{config_id}/finalize")
    def finalize(config_id: str):
        return engine.finalize(config_id).model_dump()

    @app.post("/api/configurations/{config_id}/built")
    def mark_built(config_id: str):
        return engine.mark_built(config_id).model_dump()

    @app.post("/api/configurations/{config_id}/status")
    def set_status(config_id: str, payload: StatusChangeRequest, privileged: bool = False):
        config = engine.set_status(config_id, payload.status, privileged=privileged, reason=payload.reason)
        return config.model_dump()

    @app.get("/api/configurations/{config_id}/slots")
    def slot_state(config_id: str):
        return engine.slot_state(config_id).model_dump()

    @app.get("/api/configurations/{config_id}/history")
    def history(config_id: str):
        return engine.history(config_id)

    @app.get("/api/configurations/{config_id}/compatible/{component_type}")
    def compatible_components(config_id: str, component_type: str, available_only: bool = True):
        candidates = engine.compatible_components(config_id, component_type, available_only=available_only)
        return [c.model_dump() for c in candidates]

    # === 兼容性查询 ===

    @app.get("/api/compatibility/check")
    def check_pair(type_a: str, id_a: str, type_b: str, id_b: str):
        return engine.check_pair(type_a, id_a, type_b, id_b).model_dump()

    @app.get("/api/compatibility/rules")
    def list_rules():
        return [r.model_dump() for r in engine.list_rules()]

    return app


app = create_app()
