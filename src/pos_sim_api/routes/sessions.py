"""
Sessions API - host and customer viewer endpoints.
Create sessions, dispatch host intents, follow a session by code and report scans.
"""

from http import HTTPStatus

from flask import Blueprint, Response, jsonify, request

from pos_sim.logging_config import get_logger
from pos_sim.serializers import (
    serialize_events,
    serialize_outcome,
    serialize_snapshot,
    success_response,
)
from pos_sim.services.customer_viewer import report_join, report_scan
from pos_sim.services.fallback_ticket import FallbackTicketRenderer
from pos_sim.services.state_machine import INTERNAL_INTENTS, Intent, IntentType
from pos_sim.validation import ValidationError, validate_event_limit
from pos_sim_api.routes import get_registry

logger = get_logger(__name__)

# Create blueprint without url_prefix (inherited from parent)
sessions_bp = Blueprint("sessions", __name__)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON body")
    return payload


def _parse_intent(payload: dict) -> Intent:
    data = dict(payload)
    raw_type = data.pop("type", None)
    try:
        intent_type = IntentType(raw_type)
    except ValueError:
        raise ValidationError(f"Unknown intent type: {raw_type}") from None
    if intent_type in INTERNAL_INTENTS:
        raise ValidationError(f"Intent {intent_type.value} cannot be requested")
    return Intent(type=intent_type, data=data)


@sessions_bp.post("/sessions")
def post_create_session():
    """
    Create a demo session

    Body:
        mode: web_pos | android_pos
        terminal: {retailer_id, store_id, terminal_code}
        toggles: optional initial demo toggles
        currency: optional, defaults to EUR
    """
    payload = _json_body()
    created = get_registry().create_session(
        mode=payload.get("mode"),
        terminal=payload.get("terminal") or {},
        toggles=payload.get("toggles"),
        currency=payload.get("currency") or "EUR",
    )
    return jsonify(success_response(created.to_dict())), HTTPStatus.CREATED


@sessions_bp.get("/sessions/<session_id>/snapshot")
def get_session_snapshot(session_id: str):
    """Current snapshot with its persistence health."""
    actor = get_registry().get_actor(session_id)
    return jsonify(success_response(serialize_snapshot(actor.snapshot, actor.health())))


@sessions_bp.get("/sessions/by-code/<session_code>")
def get_session_by_code(session_code: str):
    """Viewer lookup: the canonical snapshot for a session code."""
    snapshot = get_registry().find_by_code(session_code)
    return jsonify(success_response(serialize_snapshot(snapshot)))


@sessions_bp.post("/sessions/by-code/<session_code>/join")
def post_join_session(session_code: str):
    """Announce that a customer viewer opened the session."""
    registry = get_registry()
    snapshot = registry.find_by_code(session_code)
    actor = registry.get_actor(snapshot.session_id)
    report_join(actor.snapshot, registry.event_log, registry.channel)
    return jsonify(success_response(serialize_snapshot(actor.snapshot)))


@sessions_bp.post("/sessions/<session_id>/intents")
def post_session_intent(session_id: str):
    """
    Dispatch one host intent

    Body: {"type": "<INTENT>", ...intent data}. A refused intent is still a
    200 answer with accepted=false and the reason in status.
    """
    intent = _parse_intent(_json_body())
    result = get_registry().dispatch(session_id, intent)
    return jsonify(success_response(serialize_outcome(result)))


@sessions_bp.post("/sessions/<session_id>/scan")
def post_customer_scan(session_id: str):
    """
    Report the outcome of the customer scanning the receipt QR

    Body: {"outcome": "SUCCESS" | "FAIL", "message": optional}
    """
    payload = _json_body()
    registry = get_registry()
    actor = registry.get_actor(session_id)
    report_scan(
        actor.snapshot,
        payload.get("outcome"),
        registry.event_log,
        registry.channel,
        message=payload.get("message"),
    )
    logger.info(
        "Customer scan reported",
        extra={"session_id": session_id, "outcome": payload.get("outcome")},
    )
    return jsonify(success_response(serialize_snapshot(actor.snapshot))), HTTPStatus.ACCEPTED


@sessions_bp.get("/sessions/<session_id>/events")
def get_session_events(session_id: str):
    """Durable timeline of the session, oldest first."""
    registry = get_registry()
    registry.get_actor(session_id)
    limit = validate_event_limit(request.args.get("limit", type=int))
    records = registry.event_log.list(session_id, limit=limit)
    return jsonify(success_response({"events": serialize_events(records), "limit": limit}))


@sessions_bp.get("/sessions/<session_id>/fallback-ticket.pdf")
def get_fallback_ticket(session_id: str):
    """Paper receipt of the active sale, once the fallback print happened."""
    snapshot = get_registry().get_actor(session_id).snapshot
    pdf_bytes = FallbackTicketRenderer().render(snapshot)
    filename = f"ticket_{snapshot.active_sale_id}.pdf"
    return Response(
        pdf_bytes,
        mimetype="application/pdf",
        headers={"Content-Disposition": f"inline; filename={filename}"},
    )
