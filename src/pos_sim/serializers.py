"""
Serializers for consistent API responses.
"""

from typing import Any

from pos_sim.services.event_log import EventRecord
from pos_sim.services.state_machine import TransitionResult
from pos_sim.snapshot import Snapshot


def serialize_snapshot(snapshot: Snapshot, health: dict[str, Any] | None = None) -> dict[str, Any]:
    """Snapshot plus the health flags the host shows next to it."""
    data = {"snapshot": snapshot.to_json()}
    if health is not None:
        data.update(health)
    return data


def serialize_outcome(result: TransitionResult) -> dict[str, Any]:
    return {
        "accepted": result.accepted,
        "status": result.status,
        "snapshot": result.snapshot.to_json(),
    }


def serialize_events(records: list[EventRecord]) -> list[dict[str, Any]]:
    return [record.to_dict() for record in records]


def success_response(data: Any, message: str | None = None) -> dict[str, Any]:
    """Create a standardized success response."""
    response = {"status": "success", "data": data, "error": None}
    if message:
        response["message"] = message
    return response


def error_response(error: str, details: Any = None) -> dict[str, Any]:
    """Create a standardized error response."""
    response = {"status": "error", "data": None, "error": error}
    if details:
        response["details"] = details
    return response
