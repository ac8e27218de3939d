"""
Receipts API - proxies to the trusted receipt backend.
Requests are signed server-side so the signing secret never reaches a browser.
"""

from http import HTTPStatus

from flask import Blueprint, jsonify, request

from pos_sim.constants import HEADER_VERIFIER_KEY
from pos_sim.logging_config import get_logger
from pos_sim.services.receiptless_client import normalize_issue_body
from pos_sim.validation import ValidationError, require_text
from pos_sim_api.routes import get_registry

logger = get_logger(__name__)

receipts_bp = Blueprint("receipts", __name__)


@receipts_bp.post("/issue-receipt")
def post_issue_receipt():
    """
    Issue a receipt token for a sale

    A backend failure answers 502 with fallback=PRINT_RECEIPT.
    """
    body = normalize_issue_body(request.get_json(silent=True))
    receipt = get_registry().client.issue_receipt(body)
    logger.info("Receipt issued via proxy", extra={"sale_id": body["sale_id"]})
    return jsonify(receipt.model_dump(mode="json")), HTTPStatus.OK


@receipts_bp.post("/consume-receipt")
def post_consume_receipt():
    """Consume a receipt token (refund or exchange)."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    try:
        fields = {
            name: require_text(body.get(name), name)
            for name in ("retailer_id", "store_id", "terminal_code", "token_id")
        }
    except ValidationError:
        raise ValidationError(
            "Missing retailer_id / store_id / terminal_code / token_id"
        ) from None

    result = get_registry().client.consume_receipt(
        fields["token_id"],
        fields["store_id"],
        fields["terminal_code"],
        retailer_id=fields["retailer_id"],
        reason=body.get("reason"),
        verifier_key=request.headers.get(HEADER_VERIFIER_KEY),
    )
    return jsonify(result.data), HTTPStatus.OK


@receipts_bp.post("/returns/validate")
def post_validate_receipt():
    """
    Verify a receipt token for the returns desk

    The backend's status and body are passed through unchanged.
    """
    result = get_registry().client.validate_receipt(
        request.get_data(), request.headers.get(HEADER_VERIFIER_KEY)
    )
    return jsonify(result.data), result.status
