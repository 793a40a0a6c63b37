from __future__ import annotations

from decimal import Decimal

import pytest

from talentvote.domain import (
    InvalidStateError,
    OpaquePayment,
    PriceQuote,
    PurchaseAttempt,
    PurchaseState,
    RateLimitedError,
    VerifiedIdentity,
    VoterContext,
    weighted_total,
)
from talentvote.services.payments import clean_gateway_message


def test_purchase_attempt_happy_path():
    attempt = PurchaseAttempt()
    attempt.advance(PurchaseState.TOKEN_VALIDATED)
    attempt.mark_charged("60012345")
    attempt.advance(PurchaseState.VOTES_CREDITED)
    assert attempt.succeeded
    assert not attempt.is_terminal

    attempt.advance(PurchaseState.RECEIPT_SENT)
    assert attempt.is_terminal
    assert [state for state, _ in attempt.history] == [
        PurchaseState.INITIATED,
        PurchaseState.TOKEN_VALIDATED,
        PurchaseState.CHARGED,
        PurchaseState.VOTES_CREDITED,
        PurchaseState.RECEIPT_SENT,
    ]


def test_purchase_attempt_rejects_skipped_states():
    attempt = PurchaseAttempt()
    with pytest.raises(InvalidStateError):
        attempt.advance(PurchaseState.CHARGED)
    with pytest.raises(InvalidStateError):
        attempt.advance(PurchaseState.FAILED)


def test_failed_attempt_is_terminal():
    attempt = PurchaseAttempt()
    attempt.fail("declined")

    assert attempt.is_terminal
    assert attempt.failure_reason == "declined"
    assert not attempt.needs_reconciliation
    with pytest.raises(InvalidStateError):
        attempt.advance(PurchaseState.TOKEN_VALIDATED)
    with pytest.raises(InvalidStateError):
        attempt.fail("again")


def test_failure_after_charge_needs_reconciliation():
    attempt = PurchaseAttempt()
    attempt.advance(PurchaseState.TOKEN_VALIDATED)
    attempt.mark_charged("60012345")
    attempt.fail("storage")

    assert attempt.charge_captured
    assert attempt.needs_reconciliation
    assert not attempt.succeeded


@pytest.mark.parametrize(
    ("subtotal", "percent", "tax", "total"),
    [
        (1000, 0, 0, "10.00"),
        (1500, 7.5, 113, "16.13"),
        (200, 8.25, 17, "2.17"),
        (1, 50, 1, "0.02"),
    ],
)
def test_price_quote_rounds_half_up(subtotal, percent, tax, total):
    quote = PriceQuote.from_subtotal(subtotal, percent)

    assert quote.tax_cents == tax
    assert quote.total == Decimal(total)


@pytest.mark.parametrize(
    ("raw", "cleaned"),
    [
        ("E00027 The transaction was unsuccessful.", "The transaction was unsuccessful."),
        ("(TESTMODE) This transaction has been declined.", "(TESTMODE) This transaction has been declined."),
        ("2: This transaction has been declined.", "This transaction has been declined."),
        ("(11) A duplicate transaction has been submitted.", "A duplicate transaction has been submitted."),
        ("The credit card has expired.", "The credit card has expired."),
        ("", "Payment could not be processed"),
        (None, "Payment could not be processed"),
    ],
)
def test_clean_gateway_message(raw, cleaned):
    assert clean_gateway_message(raw) == cleaned


def test_weighted_total_applies_online_weight():
    assert weighted_total(online_count=1, in_person_count=0, online_vote_weight=50) == 0.5
    assert weighted_total(online_count=10, in_person_count=3, online_vote_weight=100) == 13
    assert weighted_total(online_count=10, in_person_count=3, online_vote_weight=0) == 3


def test_voter_key_prefers_identity():
    anonymous = VoterContext(ip_address="192.0.2.4")
    member = VoterContext(ip_address="192.0.2.4", identity=VerifiedIdentity(uid="u1", email="a@b.c"))

    assert anonymous.voter_key == "ip:192.0.2.4"
    assert anonymous.user_id is None
    assert member.voter_key == "user:u1"
    assert member.user_id == "u1"


def test_opaque_payment_repr_hides_token():
    payment = OpaquePayment(data_descriptor="COMMON.ACCEPT.INAPP.PAYMENT", data_value="secret-blob")

    assert "secret-blob" not in repr(payment)


def test_rate_limited_error_message():
    error = RateLimitedError(3)

    assert error.message == "Daily vote limit reached (3 per day)"
    assert str(error) == "RATE_LIMITED: Daily vote limit reached (3 per day)"
