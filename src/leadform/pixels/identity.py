"""
Normalization and hashing of personal identifiers for platform matching.

One phone rule is used for every platform: numbers entered with a leading
``+`` keep it, local numbers of the form ``0XXXXXXXXX`` are rewritten to
``+<country code>XXXXXXXXX``, anything else is reduced to its digits.
"""

from __future__ import annotations

import re

from leadform.util import sha256_hex

DEFAULT_COUNTRY_CODE = "213"
LOCAL_TRUNK_PREFIX = "0"
LOCAL_NUMBER_LENGTH = 10

_NON_DIGITS = re.compile(r"\D+")


def normalize_email(email: str | None) -> str | None:
    if not isinstance(email, str):
        return None
    e = email.strip().lower()
    if not e:
        return None
    return sha256_hex(e)


def canonical_phone(phone: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> str | None:
    if not isinstance(phone, str):
        return None
    raw = phone.strip()
    if not raw:
        return None

    if raw.startswith("+"):
        # Only the leading plus survives.
        digits = "+" + _NON_DIGITS.sub("", raw[1:])
        return digits if len(digits) > 1 else None

    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None

    if len(digits) == LOCAL_NUMBER_LENGTH and digits.startswith(LOCAL_TRUNK_PREFIX):
        cc = str(country_code or DEFAULT_COUNTRY_CODE).strip().lstrip("+")
        return f"+{cc}{digits[1:]}"

    return digits


def normalize_phone(phone: str | None, country_code: str = DEFAULT_COUNTRY_CODE) -> str | None:
    p = canonical_phone(phone, country_code)
    if not p:
        return None
    return sha256_hex(p)
