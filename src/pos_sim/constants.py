"""
Application constants and enums for the POS simulator.
"""

from enum import Enum


class PosSimMode(str, Enum):
    WEB_POS = "web_pos"
    ANDROID_POS = "android_pos"


class FlowStage(str, Enum):
    BOOT = "BOOT"
    CART = "CART"
    CHECKOUT = "CHECKOUT"
    PROCESSING = "PROCESSING"
    RESULT = "RESULT"


class PaymentState(str, Enum):
    IDLE = "IDLE"
    INITIATED = "INITIATED"
    PROCESSING = "PROCESSING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"


class IssuanceState(str, Enum):
    IDLE = "IDLE"
    INGESTING = "INGESTING"
    TOKEN_READY = "TOKEN_READY"
    FAILED = "FAILED"
    FALLBACK_PRINTED = "FALLBACK_PRINTED"


class ScanState(str, Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"


class PrintReason(str, Enum):
    NETWORK = "NETWORK"
    ISSUANCE_FAIL = "ISSUANCE_FAIL"
    SCAN_FAIL = "SCAN_FAIL"
    CUSTOMER_REQUEST = "CUSTOMER_REQUEST"


class PaymentOutcome(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"
    TIMEOUT = "timeout"


class NetworkMode(str, Enum):
    NORMAL = "normal"
    SLOW = "slow"
    DOWN = "down"


class IssuanceMode(str, Enum):
    NORMAL = "normal"
    FAIL = "fail"
    DELAY = "delay"


class PrintFallback(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class CustomerScanSim(str, Enum):
    NONE = "none"
    AUTO_SUCCESS = "auto_success"
    AUTO_FAIL = "auto_fail"


class EventType(str, Enum):
    """Durable audit vocabulary written to the event log."""

    SESSION_CREATED = "SESSION_CREATED"
    NEW_SALE_STARTED = "NEW_SALE_STARTED"
    RESET_REQUESTED = "RESET_REQUESTED"
    CART_UPDATED = "CART_UPDATED"
    CART_CLEARED = "CART_CLEARED"
    CHECKOUT_INITIATED = "CHECKOUT_INITIATED"
    STAGE_CHANGED = "STAGE_CHANGED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_RESULT = "PAYMENT_RESULT"
    RECEIPT_ISSUANCE_STARTED = "RECEIPT_ISSUANCE_STARTED"
    RECEIPT_TOKEN_READY = "RECEIPT_TOKEN_READY"
    RECEIPT_ISSUANCE_FAILED = "RECEIPT_ISSUANCE_FAILED"
    CUSTOMER_JOINED = "CUSTOMER_JOINED"
    CUSTOMER_SCANNED = "CUSTOMER_SCANNED"
    FALLBACK_PRINTED = "FALLBACK_PRINTED"

    @classmethod
    def all_values(cls) -> set:
        return {member.value for member in cls}


class ChannelMessageType(str, Enum):
    """Transient notifications published on the session channel."""

    SESSION_CREATED = "SESSION_CREATED"
    CUSTOMER_JOINED = "CUSTOMER_JOINED"
    CUSTOMER_SCANNED = "CUSTOMER_SCANNED"
    CART_UPDATED = "CART_UPDATED"
    SNAPSHOT_SYNC = "SNAPSHOT_SYNC"
    RESET_REQUESTED = "RESET_REQUESTED"


# Payment states that end a payment attempt.
TERMINAL_PAYMENT_STATES = {
    PaymentState.APPROVED,
    PaymentState.DECLINED,
    PaymentState.TIMEOUT,
    PaymentState.NETWORK_ERROR,
}

# Stages in which the cart may be edited or paid.
PAYABLE_STAGES = {FlowStage.CART, FlowStage.CHECKOUT}

# Issuance states from which a fallback print replaces the issuance marker.
FALLBACK_REPLACEABLE_ISSUANCE = {IssuanceState.IDLE, IssuanceState.FAILED}

STAGE_TRANSITIONS = {
    (FlowStage.BOOT, FlowStage.CART): {"action": "session_ready"},
    (FlowStage.CART, FlowStage.CART): {"action": "clear_cart"},
    (FlowStage.CART, FlowStage.CHECKOUT): {"action": "start_checkout"},
    (FlowStage.CHECKOUT, FlowStage.CART): {"action": "back_to_cart"},
    (FlowStage.CART, FlowStage.PROCESSING): {"action": "pay"},
    (FlowStage.CHECKOUT, FlowStage.PROCESSING): {"action": "pay"},
    (FlowStage.CART, FlowStage.RESULT): {"action": "pay_network_down"},
    (FlowStage.CHECKOUT, FlowStage.RESULT): {"action": "pay_network_down"},
    (FlowStage.PROCESSING, FlowStage.RESULT): {"action": "resolve_payment"},
    (FlowStage.RESULT, FlowStage.CART): {"action": "new_sale"},
}

DEFAULT_CURRENCY = "EUR"
SESSION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SESSION_CODE_LENGTH = 6

DEFAULT_EVENT_PAGE_SIZE = 100
MAX_EVENT_PAGE_SIZE = 500

SIGNATURE_VERSION = "RL1"
HEADER_TIMESTAMP = "x-rl-ts"
HEADER_NONCE = "x-rl-nonce"
HEADER_BODY_HASH = "x-rl-body-sha256"
HEADER_SIGNATURE = "x-rl-sig"
HEADER_TERMINAL_KEY = "x-terminal-key"
HEADER_VERIFIER_KEY = "x-verifier-key"

FALLBACK_PRINT_INSTRUCTION = "PRINT_RECEIPT"
DEFAULT_CONSUME_REASON = "return_refund"
