"""HTTP control API for the orchestrator."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .errors import (
    ConfigurationError,
    FlowNotFoundError,
    InterventionError,
    RecoveryError,
)
from .models import WireModel
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class FlowAction(WireModel):
    """Body of ``PUT /flow``."""

    flow_id: str
    action: str
    intervention_action: Optional[str] = None
    custom_data: Any = None


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": message, **extra}, status_code=status_code
    )


def create_app(orchestrator: Orchestrator) -> FastAPI:
    """Create the FastAPI application serving ``/flow``.

    Args:
        orchestrator: Service instance; started and stopped with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await orchestrator.start()
        yield
        await orchestrator.stop()

    app = FastAPI(title="flowpilot", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        return _error(str(exc), 400, errors=exc.errors)

    @app.exception_handler(FlowNotFoundError)
    async def not_found(request: Request, exc: FlowNotFoundError) -> JSONResponse:
        return _error(str(exc), 404)

    @app.exception_handler(RecoveryError)
    async def recovery_error(request: Request, exc: RecoveryError) -> JSONResponse:
        return _error(str(exc), 409)

    @app.exception_handler(InterventionError)
    async def intervention_error(request: Request, exc: InterventionError) -> JSONResponse:
        return _error(str(exc), 409)

    @app.post("/flow")
    async def create_flow(body: Dict[str, Any] = Body(...)) -> JSONResponse:
        payload = dict(body)
        dependencies = payload.pop("dependencies", None)
        priority = payload.pop("priority", None)
        flow_id = await orchestrator.submit(payload, dependencies, priority)
        record = await orchestrator.status(flow_id)
        configuration = record.configuration.to_wire() if record else None
        return _ok({"flowId": flow_id, "configuration": configuration}, 201)

    @app.get("/flow")
    async def read_flow(
        action: Optional[str] = Query(None),
        flow_id: Optional[str] = Query(None, alias="flowId"),
    ) -> JSONResponse:
        if flow_id:
            record = await orchestrator.status(flow_id)
            if record is None:
                raise FlowNotFoundError(flow_id)
            return _ok(record.to_wire())
        if action == "queue":
            status = await orchestrator.queue_status()
            status["queue"] = [entry.to_wire() for entry in status["queue"]]
            return _ok(status)
        if action == "all":
            return _ok([record.to_wire() for record in await orchestrator.list_all()])
        if action is not None:
            return _error(f"Unknown action: {action}", 400)
        return _ok(await orchestrator.summary())

    @app.put("/flow")
    async def control_flow(body: FlowAction) -> JSONResponse:
        if body.action == "pause":
            result = await orchestrator.pause(body.flow_id)
        elif body.action == "resume":
            result = await orchestrator.resume(body.flow_id)
        elif body.action == "cancel":
            result = await orchestrator.cancel(body.flow_id)
        elif body.action == "recover":
            result = await orchestrator.recover(body.flow_id)
        elif body.action == "resolve":
            if not body.intervention_action:
                return _error("interventionAction is required for resolve", 400)
            result = await orchestrator.resolve_intervention(
                body.flow_id, body.intervention_action, body.custom_data
            )
        else:
            return _error(f"Unknown action: {body.action}", 400)
        message = f"Flow {body.action} {'succeeded' if result else 'had no effect'}"
        logger.info(f"{message}: {body.flow_id}")
        return _ok({"result": result, "message": message})

    @app.delete("/flow")
    async def delete_flow(flow_id: str = Query(..., alias="flowId")) -> JSONResponse:
        return _ok({"result": await orchestrator.delete(flow_id)})

    return app
