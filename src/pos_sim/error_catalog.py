"""
Centralized catalog of the controlled errors of the POS simulator.
Used by the API error handlers and as operator reference.
"""

ERROR_CATALOG = {
    "CONFIG_001": {
        "title": "Missing Signing Secret",
        "description": "RL_SIGNING_SECRET is not configured; signed backend calls cannot be made.",
        "http_code": 500,
        "solution": "Set RL_SIGNING_SECRET to the secret shared with the receipt backend.",
    },
    "CONFIG_002": {
        "title": "Missing Backend Endpoint",
        "description": "The receipt backend base URL or its anon key is not configured.",
        "http_code": 500,
        "solution": "Set SUPABASE_URL and SUPABASE_ANON_KEY.",
    },
    "CONFIG_003": {
        "title": "Missing Terminal Key",
        "description": "The terminal key used to authenticate issuance is not configured.",
        "http_code": 500,
        "solution": "Set TERMINAL_KEY for the demo terminal.",
    },
    "SIM_001": {
        "title": "Simulator Disabled",
        "description": "The POS simulator feature gate is off.",
        "http_code": 404,
        "solution": "Set POS_SIM_ENABLED=true.",
    },
    "SESSION_001": {
        "title": "Session Not Found",
        "description": "No snapshot exists for the given session id or code (unknown or expired).",
        "http_code": 404,
        "solution": "Start a new demo session from the host.",
    },
    "INTENT_001": {
        "title": "Intent Rejected",
        "description": "The requested action is not allowed in the current sale state.",
        "http_code": 409,
        "solution": "Check the stage, payment and issuance state shown on the host.",
    },
    "VALID_001": {
        "title": "Invalid Request",
        "description": "Malformed identifiers or empty required fields.",
        "http_code": 400,
        "solution": "Fix the request body and retry.",
    },
    "AUTH_001": {
        "title": "Missing Verifier Key",
        "description": "Receipt validation requires the caller's x-verifier-key header.",
        "http_code": 401,
        "solution": "Send the verifier key issued to the returns desk.",
    },
    "UPSTREAM_001": {
        "title": "Receipt Backend Unavailable",
        "description": "The receipt backend answered with a non-success status or an invalid body.",
        "http_code": 502,
        "solution": "Print the fallback paper receipt; retry issuance later.",
    },
    "UPSTREAM_002": {
        "title": "Receipt Backend Timeout",
        "description": "The receipt backend did not answer within the configured timeout.",
        "http_code": 504,
        "solution": "Print the fallback paper receipt; check network mode.",
    },
    "PERSIST_001": {
        "title": "Snapshot Write Failed",
        "description": (
            "The canonical snapshot could not be stored; "
            "viewers may see state a crash could lose."
        ),
        "http_code": 500,
        "solution": (
            "Check database connectivity; the host keeps publishing its in-memory snapshot."
        ),
    },
    "PERSIST_002": {
        "title": "Event Append Failed",
        "description": "An audit event could not be appended to the session timeline.",
        "http_code": 500,
        "solution": "Check database connectivity; the timeline may miss this transition.",
    },
    "SYSTEM_001": {
        "title": "Internal Error",
        "description": "Unhandled exception in the simulator service.",
        "http_code": 500,
        "solution": "Review the service logs.",
    },
}


def catalog_entry(code: str) -> dict:
    return ERROR_CATALOG.get(code, ERROR_CATALOG["SYSTEM_001"])
