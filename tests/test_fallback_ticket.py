import pytest

from pos_sim.constants import PrintReason
from pos_sim.errors import IntentRejected
from pos_sim.services.fallback_ticket import FallbackTicketRenderer
from pos_sim.services.state_machine import Intent, IntentType, SessionStateMachine
from pos_sim.snapshot import FallbackInfo


@pytest.fixture
def cart_snapshot(make_snapshot):
    machine = SessionStateMachine()
    snapshot = machine.apply(make_snapshot(), Intent.of(IntentType.SESSION_READY)).snapshot
    for name, price in (("Coffee", 1.20), ("Croissant", 2.10)):
        snapshot = machine.apply(
            snapshot,
            Intent.of(IntentType.ADD_ITEM, name=name, unit_price=price, qty=1, vat_rate=0.23),
        ).snapshot
    return snapshot


def test_ticket_requires_fallback_print(cart_snapshot):
    with pytest.raises(IntentRejected):
        FallbackTicketRenderer().render(cart_snapshot)


def test_ticket_renders_pdf(cart_snapshot):
    printed = cart_snapshot.clone(
        fallback=FallbackInfo(printed=True, print_reason=PrintReason.NETWORK)
    )
    pdf_bytes = FallbackTicketRenderer(store_label="Demo Store").render(printed)
    assert pdf_bytes.startswith(b"%PDF")
    assert len(pdf_bytes) > 500
