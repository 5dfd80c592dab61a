"""
Flight Orchestrator - API Server

FastAPI application serving:
  POST /api/flights/start                 - start a flight workflow
  POST /api/flights/journey               - start a multi-leg journey
  POST /api/flights/{number}/delay        - announce a delay
  POST /api/flights/{number}/gate         - change gate
  POST /api/flights/{number}/cancel       - cancel a flight
  GET  /api/flights/{number}/state        - current phase
  GET  /api/flights/{number}/details      - flight snapshot
  GET  /api/flights/{number}/transitions  - persisted transition history
  GET  /api/flights/active                - running flights
  POST /api/journeys/{id}/cancel          - cancel a journey
  GET  /api/journeys/{id}/status          - journey status and active leg
  POST /api/instances/{id}/signals/{name} - generic signal
  GET  /api/instances/{id}/query/{kind}   - generic query
  GET  /api/instances/{id}/history        - durable workflow history
  POST /api/admin/restart-worker          - rebuild state from the durable log
  GET  /api/stats                         - durable log statistics
  GET  /health                            - liveness
  GET  /ready                             - readiness

Flight routes take an optional ?flight_date=YYYY-MM-DD (default: today).

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    FO_CONFIG=config/orchestrator.yaml uvicorn api.server:app --reload

Requires: pip install fastapi uvicorn
"""

import logging
import os
import time
from datetime import date
from typing import Any

from engine.errors import (
    DurableLogUnavailable,
    InstanceAlreadyRunning,
    InstanceHalted,
    InstanceNotFound,
    InstanceTerminal,
    InvalidArgument,
    OrchestratorError,
)
from engine.registry import flight_instance_id, journey_instance_id

logger = logging.getLogger("flight_orchestrator.api")


def status_for(error: OrchestratorError) -> int:
    """HTTP status for an orchestrator error."""
    if isinstance(error, InvalidArgument):
        return 422
    if isinstance(error, InstanceNotFound):
        return 404
    if isinstance(error, (InstanceAlreadyRunning, InstanceTerminal, InstanceHalted)):
        return 409
    if isinstance(error, DurableLogUnavailable):
        return 503
    return 500


def _flight_id(flight_number: str, flight_date: str | None) -> str:
    return flight_instance_id(flight_number, flight_date or date.today().isoformat())


def create_app(config_path: str = "", coordinator: Any = None) -> Any:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances around their own Coordinator.
    """
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse

    from api.models import (
        AnnounceDelayRequest, CancelRequest, ChangeGateRequest,
        ErrorResponse, FlightStateResponse, SignalResponse,
        StartJourneyRequest, StartResponse,
    )
    from coordinator.config import OrchestratorConfig
    from coordinator.runtime import Coordinator
    from coordinator.types import QueryKind, SignalName

    app = FastAPI(
        title="Flight Orchestrator API",
        version="0.1.0",
        description="Durable flight lifecycle orchestration",
    )

    # ── State ────────────────────────────────────────────────

    _coordinator: Coordinator | None = coordinator

    def get_coordinator() -> Coordinator:
        nonlocal _coordinator
        if _coordinator is None:
            config = OrchestratorConfig.load(base_path=config_path) if config_path else OrchestratorConfig.load()
            _coordinator = Coordinator(config=config, verbose=False)
        return _coordinator

    def invalid(errors: list[str]) -> Any:
        body = ErrorResponse("InvalidArgument", "; ".join(errors), {"errors": errors})
        return JSONResponse(status_code=422, content=body.to_dict())

    async def json_object(request: Request) -> dict[str, Any] | None:
        """Request body as a dict, or None when it is not a JSON object."""
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    NOT_AN_OBJECT = ["request body must be a JSON object"]

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if _coordinator is not None:
            _coordinator.shutdown()

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError):
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        body = ErrorResponse(type(exc).__name__, str(exc), exc.detail)
        return JSONResponse(status_code=code, content=body.to_dict())

    # ── Admission ─────────────────────────────────────────────

    @app.post("/api/flights/start")
    async def start_flight(request: Request):
        body = await json_object(request)
        if body is None:
            return invalid(NOT_AN_OBJECT)
        instance_id = get_coordinator().start_flight(body)
        response = StartResponse(
            instance_id=instance_id,
            message="Flight workflow started successfully",
            flight_number=body.get("flight_number", body.get("flightNumber")),
        )
        return JSONResponse(content=response.to_dict())

    @app.post("/api/flights/journey")
    async def start_journey(request: Request):
        body = await json_object(request)
        if body is None:
            return invalid(NOT_AN_OBJECT)
        req = StartJourneyRequest.from_body(body)
        errors = req.validate()
        if errors:
            return invalid(errors)
        coord = get_coordinator()
        instance_id = coord.start_journey(req.journey_id, req.flights)
        response = StartResponse(
            instance_id=instance_id,
            message="Journey workflow started successfully",
            journey_id=req.journey_id,
            number_of_legs=len(req.flights),
        )
        return JSONResponse(content=response.to_dict())

    # ── Flight Signals ────────────────────────────────────────

    @app.post("/api/flights/{flight_number}/delay")
    async def announce_delay(flight_number: str, request: Request, flight_date: str | None = None):
        body = await json_object(request)
        if body is None:
            return invalid(NOT_AN_OBJECT)
        req = AnnounceDelayRequest(minutes=body.get("minutes"))
        errors = req.validate()
        if errors:
            return invalid(errors)
        instance_id = _flight_id(flight_number, flight_date)
        signal_id = get_coordinator().announce_delay(instance_id, req.minutes)
        return JSONResponse(content=SignalResponse(
            instance_id, SignalName.ANNOUNCE_DELAY.value, signal_id).to_dict())

    @app.post("/api/flights/{flight_number}/gate")
    async def change_gate(flight_number: str, request: Request, flight_date: str | None = None):
        body = await json_object(request)
        if body is None:
            return invalid(NOT_AN_OBJECT)
        req = ChangeGateRequest(new_gate=body.get("new_gate", body.get("newGate")))
        errors = req.validate()
        if errors:
            return invalid(errors)
        instance_id = _flight_id(flight_number, flight_date)
        signal_id = get_coordinator().change_gate(instance_id, req.new_gate)
        return JSONResponse(content=SignalResponse(
            instance_id, SignalName.CHANGE_GATE.value, signal_id).to_dict())

    @app.post("/api/flights/{flight_number}/cancel")
    async def cancel_flight(flight_number: str, request: Request, flight_date: str | None = None):
        body = await json_object(request)
        if body is None:
            return invalid(NOT_AN_OBJECT)
        req = CancelRequest(reason=body.get("reason"))
        errors = req.validate()
        if errors:
            return invalid(errors)
        instance_id = _flight_id(flight_number, flight_date)
        signal_id = get_coordinator().cancel_flight(instance_id, req.reason)
        return JSONResponse(content=SignalResponse(
            instance_id, SignalName.CANCEL.value, signal_id).to_dict())

    # ── Flight Reads ──────────────────────────────────────────

    @app.get("/api/flights/active")
    async def active_flights():
        flights = get_coordinator().active_flights()
        return JSONResponse(content={"count": len(flights), "flights": flights})

    @app.get("/api/flights/{flight_number}/state")
    async def flight_state(flight_number: str, flight_date: str | None = None):
        phase = get_coordinator().query(_flight_id(flight_number, flight_date), QueryKind.CURRENT_PHASE)
        return JSONResponse(content=FlightStateResponse(flight_number, phase).to_dict())

    @app.get("/api/flights/{flight_number}/details")
    async def flight_details(flight_number: str, flight_date: str | None = None):
        details = get_coordinator().query(_flight_id(flight_number, flight_date), QueryKind.FLIGHT_DETAILS)
        return JSONResponse(content=details)

    @app.get("/api/flights/{flight_number}/transitions")
    async def flight_transitions(flight_number: str, flight_date: str | None = None):
        rows = get_coordinator().transitions(flight_number, flight_date)
        return JSONResponse(content={"flight_number": flight_number, "count": len(rows), "transitions": rows})

    # ── Journeys ──────────────────────────────────────────────

    @app.post("/api/journeys/{journey_id}/cancel")
    async def cancel_journey(journey_id: str, request: Request):
        body = await json_object(request)
        if body is None:
            return invalid(NOT_AN_OBJECT)
        req = CancelRequest(reason=body.get("reason"))
        errors = req.validate()
        if errors:
            return invalid(errors)
        instance_id = journey_instance_id(journey_id)
        signal_id = get_coordinator().cancel_journey(instance_id, req.reason)
        return JSONResponse(content=SignalResponse(
            instance_id, SignalName.CANCEL_JOURNEY.value, signal_id).to_dict())

    @app.get("/api/journeys/{journey_id}/status")
    async def journey_status(journey_id: str):
        coord = get_coordinator()
        instance_id = journey_instance_id(journey_id)
        return JSONResponse(content={
            "instance_id": instance_id,
            "journey_status": coord.query(instance_id, QueryKind.JOURNEY_STATUS),
            "current_leg_index": coord.query(instance_id, QueryKind.CURRENT_LEG_INDEX),
            "status": coord.status(instance_id),
        })

    # ── Generic Instance Surface ──────────────────────────────

    @app.post("/api/instances/{instance_id}/signals/{name}")
    async def signal_instance(instance_id: str, name: str, request: Request):
        body = await json_object(request)
        if body is None:
            return invalid(NOT_AN_OBJECT)
        signal_id = get_coordinator().signal(instance_id, name, body)
        return JSONResponse(content=SignalResponse(instance_id, name, signal_id).to_dict())

    @app.get("/api/instances/{instance_id}/query/{kind}")
    async def query_instance(instance_id: str, kind: str):
        result = get_coordinator().query(instance_id, kind)
        return JSONResponse(content={"instance_id": instance_id, "kind": kind, "result": result})

    @app.get("/api/instances/{instance_id}/history")
    async def instance_history(instance_id: str):
        events = get_coordinator().history(instance_id)
        return JSONResponse(content={"instance_id": instance_id, "count": len(events), "events": events})

    # ── Admin ─────────────────────────────────────────────────

    @app.post("/api/admin/restart-worker")
    async def restart_worker():
        recovered = get_coordinator().restart_worker()
        return JSONResponse(content={
            "status": "restarted",
            "recovered": recovered,
            "timestamp": time.time(),
        })

    @app.get("/api/stats")
    async def get_stats():
        return JSONResponse(content=get_coordinator().stats())

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        try:
            get_coordinator().stats()
            return JSONResponse(content={"status": "ok"})
        except OrchestratorError as e:
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


# ── Module-level app for uvicorn ──────────────────────────────

try:
    app = create_app(config_path=os.environ.get("FO_CONFIG", ""))
except ImportError:
    # FastAPI not installed; app creation deferred
    app = None


def main():
    import uvicorn
    uvicorn.run("api.server:app", host=os.environ.get("FO_HOST", "0.0.0.0"),
                port=int(os.environ.get("FO_PORT", "8080")))


if __name__ == "__main__":
    main()
