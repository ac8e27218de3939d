"""
Centralized error handlers for the simulator Flask app.
"""

from http import HTTPStatus

from flask import Flask, jsonify
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from pos_sim.constants import FALLBACK_PRINT_INSTRUCTION
from pos_sim.error_catalog import catalog_entry
from pos_sim.errors import PosSimError, UpstreamError
from pos_sim.logging_config import get_logger
from pos_sim.serializers import error_response
from pos_sim.validation import ValidationError

logger = get_logger(__name__)


def register_error_handlers(app: Flask) -> None:
    """
    Register centralized error handlers for the Flask app.

    Every handler answers with the JSON envelope; the simulator has no HTML
    surface.
    """

    @app.errorhandler(PosSimError)
    def handle_pos_sim_error(e: PosSimError):
        """Handle catalogued domain errors."""
        entry = catalog_entry(e.code)
        http_code = entry["http_code"]
        if http_code >= 500:
            logger.error(f"{e.code}: {e}")
        else:
            logger.warning(f"{e.code}: {e}")
        body = error_response(str(e), e.details)
        body["code"] = e.code
        if isinstance(e, UpstreamError):
            body["fallback"] = FALLBACK_PRINT_INSTRUCTION
            if e.status is not None:
                body["upstream_status"] = e.status
        return jsonify(body), http_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(e: ValidationError):
        """Handle custom validation errors."""
        logger.warning(f"Validation error: {e}")
        body = error_response(str(e))
        body["code"] = e.code
        return jsonify(body), HTTPStatus.BAD_REQUEST

    @app.errorhandler(PydanticValidationError)
    def handle_pydantic_validation_error(e: PydanticValidationError):
        """Handle Pydantic validation errors."""
        logger.warning(f"Pydantic validation error: {e}")
        return jsonify(
            error_response("Invalid data", e.errors(include_url=False, include_context=False))
        ), HTTPStatus.BAD_REQUEST

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(e: SQLAlchemyError):
        """Handle database errors."""
        logger.error(f"Database error: {e}", exc_info=True)
        return jsonify(error_response("Database error")), HTTPStatus.INTERNAL_SERVER_ERROR

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        """Handle HTTP exceptions from Werkzeug."""
        logger.warning(f"HTTP exception {e.code}: {e.description}")
        return jsonify(error_response(e.description or str(e))), e.code

    @app.errorhandler(Exception)
    def handle_generic_exception(e: Exception):
        """Handle any unhandled exceptions."""
        logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify(
            error_response(catalog_entry("SYSTEM_001")["title"])
        ), HTTPStatus.INTERNAL_SERVER_ERROR
