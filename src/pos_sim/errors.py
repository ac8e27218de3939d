"""Domain exceptions raised by the POS simulator core."""

from __future__ import annotations

from typing import Any

from pos_sim.error_catalog import catalog_entry


class PosSimError(Exception):
    """Base error carrying an error catalog code."""

    code = "SYSTEM_001"

    def __init__(self, message: str, code: str | None = None, details: Any = None):
        super().__init__(message)
        if code:
            self.code = code
        self.details = details

    @property
    def http_code(self) -> int:
        return catalog_entry(self.code)["http_code"]


class ConfigurationError(PosSimError):
    """A secret or endpoint needed by the operation is not configured."""

    code = "CONFIG_001"


class FeatureDisabledError(PosSimError):
    code = "SIM_001"


class SessionNotFoundError(PosSimError):
    code = "SESSION_001"


class PersistenceError(PosSimError):
    """Snapshot or event write failure."""

    code = "PERSIST_001"


class UpstreamError(PosSimError):
    """Receipt backend answered with a failure, an invalid body, or not at all."""

    code = "UPSTREAM_001"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: Any = None,
        status: int | None = None,
    ):
        super().__init__(message, code=code, details=details)
        self.status = status


class IntentRejected(PosSimError):
    code = "INTENT_001"


class MissingVerifierKeyError(PosSimError):
    """Receipt validation was attempted without the caller's verifier key."""

    code = "AUTH_001"
