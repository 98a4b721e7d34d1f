"""Kenyan mobile number normalisation (MSISDN 2547XXXXXXXX / 2541XXXXXXXX)."""
import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")


def normalize_msisdn(phone: Optional[str]) -> Optional[str]:
    """
    Normalise a phone number to the 254XXXXXXXXX form M-Pesa expects.

    Accepts 07XX..., 01XX..., +2547..., 2547... and 7XX... forms.
    Returns None for empty input.
    """
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", str(phone))
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits
    return digits


def mask_msisdn(phone: Optional[str]) -> str:
    """Mask a phone number for logs, keeping the last four digits."""
    if not phone:
        return ""
    return phone[-4:].rjust(len(phone), "*")
