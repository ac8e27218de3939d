"""
Simulated card terminal: deterministic outcomes, tunable delays.
"""

from __future__ import annotations

from pos_sim.config import PaymentTimings
from pos_sim.constants import NetworkMode, PaymentOutcome, PaymentState
from pos_sim.snapshot import Toggles

OUTCOME_STATES = {
    PaymentOutcome.SUCCESS: PaymentState.APPROVED,
    PaymentOutcome.FAIL: PaymentState.DECLINED,
    PaymentOutcome.TIMEOUT: PaymentState.TIMEOUT,
}


def resolve_outcome(outcome: PaymentOutcome | str) -> PaymentState:
    """Map the payment-outcome toggle to the final payment state."""
    return OUTCOME_STATES[PaymentOutcome(outcome)]


def payment_delay_ms(toggles: Toggles, timings: PaymentTimings) -> int:
    """
    How long the terminal "thinks" before answering.

    A slow network multiplies the base delay; a timeout outcome multiplies it
    again so that it is always noticeably longer than a decline.
    """
    delay = float(timings.base_delay_ms)
    if toggles.network_mode == NetworkMode.SLOW:
        delay *= timings.slow_factor
    if toggles.payment_outcome == PaymentOutcome.TIMEOUT:
        delay *= timings.timeout_factor
    return int(round(delay))


def network_is_down(toggles: Toggles) -> bool:
    return toggles.network_mode == NetworkMode.DOWN
