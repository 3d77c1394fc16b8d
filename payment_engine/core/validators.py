"""
Instrument validation.

Pure functions: no storage, no clock unless one is passed in, no I/O.
Identical inputs always give identical outputs, which keeps settlement
reproducible in tests.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import NamedTuple, Optional, Union

from payment_engine.core.errors import ValidationFailed
from payment_engine.core.models import CardInstrument, CardNetwork, UpiInstrument

# Failure reasons, in the order they are checked
INVALID_CARD_NUMBER = "invalid_card_number"
INVALID_EXPIRY = "invalid_expiry"
CARD_EXPIRED = "card_expired"
INVALID_CVV = "invalid_cvv"
INVALID_VPA = "invalid_vpa"

# ASCII only; str.isdigit and \d also accept other scripts
_NON_DIGITS = re.compile(r"[^0-9]")
_CARD_NUMBER = re.compile(r"[0-9][0-9 -]*")
_CVV = re.compile(r"[0-9]+")
_VPA = re.compile(r"^[A-Za-z0-9._-]+@[A-Za-z]{3,}$")

# (network, prefixes, accepted total lengths)
_NETWORK_RULES = (
    (CardNetwork.VISA, ("4",), (16, 19)),
    (CardNetwork.MASTERCARD, ("51", "52", "53", "54", "55"), (16,)),
    (CardNetwork.AMEX, ("34", "37"), (15,)),
    (CardNetwork.RUPAY, ("508",), (15, 16)),
)


class CardCheck(NamedTuple):
    network: CardNetwork
    ok: bool
    reason: Optional[str]


def digits_only(number: str) -> str:
    return _NON_DIGITS.sub("", number)


def _luhn_sum(digits: str) -> int:
    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total


def luhn_valid(number: str) -> bool:
    """Mod-10 check. Non-digits are ignored; an empty number is invalid."""
    digits = digits_only(number)
    if not digits:
        return False
    return _luhn_sum(digits) % 10 == 0


def luhn_check_digit(partial: str) -> str:
    """Digit that makes ``partial + digit`` pass the Luhn check."""
    digits = digits_only(partial)
    # Appending a digit shifts every existing digit one place left
    return str((10 - _luhn_sum(digits + "0") % 10) % 10)


def detect_network(number: str) -> CardNetwork:
    """Network by prefix and length only; does not look at the checksum."""
    digits = digits_only(number)
    for network, prefixes, lengths in _NETWORK_RULES:
        if len(digits) in lengths and digits.startswith(prefixes):
            return network
    return CardNetwork.UNKNOWN


def expiry_reason(expiry_month: int, expiry_year: int, today: Optional[date] = None) -> Optional[str]:
    """None when the expiry is usable, else the failure reason."""
    if not 1 <= expiry_month <= 12:
        return INVALID_EXPIRY
    if 0 <= expiry_year < 100:
        expiry_year += 2000
    today = today or datetime.now(timezone.utc).date()
    if (expiry_year, expiry_month) < (today.year, today.month):
        return CARD_EXPIRED
    return None


def cvv_valid(cvv: str, network: CardNetwork) -> bool:
    expected = 4 if network is CardNetwork.AMEX else 3
    return bool(_CVV.fullmatch(cvv)) and len(cvv) == expected


def validate_card(
    number: str,
    expiry_month: int,
    expiry_year: int,
    cvv: str,
    today: Optional[date] = None,
) -> CardCheck:
    """
    Assess a card.

    ok is true iff the Luhn check, the expiry and the CVV format all pass.
    On failure, reason names the first failing check.
    """
    network = detect_network(number)

    if not _CARD_NUMBER.fullmatch(number) or not luhn_valid(number):
        return CardCheck(network, False, INVALID_CARD_NUMBER)

    reason = expiry_reason(expiry_month, expiry_year, today)
    if reason is not None:
        return CardCheck(network, False, reason)

    if not cvv_valid(cvv, network):
        return CardCheck(network, False, INVALID_CVV)

    return CardCheck(network, True, None)


def validate_upi(identifier: str) -> bool:
    """Syntactic VPA check: ``local@handle`` with an alphabetic handle of 3+ chars."""
    return bool(_VPA.match(identifier))


def check_instrument(
    instrument: Union[CardInstrument, UpiInstrument], today: Optional[date] = None
) -> Optional[str]:
    """Failure reason for any instrument, or None when it is valid."""
    if isinstance(instrument, CardInstrument):
        return validate_card(
            instrument.number,
            instrument.expiry_month,
            instrument.expiry_year,
            instrument.cvv,
            today=today,
        ).reason
    if not validate_upi(instrument.vpa):
        return INVALID_VPA
    return None


def require_valid(
    instrument: Union[CardInstrument, UpiInstrument], today: Optional[date] = None
) -> None:
    """Raise ValidationFailed when the instrument does not pass."""
    reason = check_instrument(instrument, today)
    if reason is not None:
        raise ValidationFailed(reason, method=instrument.method)


# ============================================================================
# SUMMARIES (what the ledger is allowed to keep)
# ============================================================================


def mask_vpa(vpa: str) -> str:
    """cu******@upi: keep two leading characters of the local part."""
    local, sep, handle = vpa.partition("@")
    if not sep:
        return "*" * len(vpa)
    visible = local[:2]
    return f"{visible}{'*' * max(len(local) - len(visible), 0)}@{handle}"


def summarize_instrument(instrument: Union[CardInstrument, UpiInstrument]) -> dict:
    """Storable summary: network and last four for cards, masked VPA for UPI."""
    if isinstance(instrument, CardInstrument):
        digits = digits_only(instrument.number)
        return {
            "network": detect_network(digits).value,
            "last4": digits[-4:],
            "expiry_month": instrument.expiry_month,
            "expiry_year": instrument.expiry_year,
        }
    return {"vpa": mask_vpa(instrument.vpa)}
