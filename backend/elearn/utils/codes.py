"""Generators for access codes, certificate numbers and verification codes."""

import random
import secrets
import string
import time
from typing import Optional

BASE36_ALPHABET = string.digits + string.ascii_lowercase

# Course name -> 4-letter access code prefix.
COURSE_PREFIXES = {
    'Školení řidičů řídících služební vozidlo zaměstnavatele': 'DRIV',
    'Školení BOZP a PO': 'BOZP',
    'Theory test': 'THEO',
    'Školení zaměstnanců a OSVČ pro provádění práce ve výškách (PVV)': 'HEIG',
    'Hygiena a první pomoc': 'HYGI',
    'Nakládání s odpady': 'WAST',
    'Školení pro zdravotnické pracovníky - BRC': 'MEDB',
    'Školení pro nezdravotnické pracovníky - BRC': 'NONM',
    'Školení přepravy odpadu - BRC': 'TRAN',
    'Health and Safety (H&S) and Fire Protection (FP) training': 'HSFT',
    'Szkolenia BHP i PPOŻ': 'PLHS',
    'навчання з охорони праці (OHS) та протипожежного захисту (FP)': 'UAHS',
    'Přeprava nebezpečných věcí v praxi - Dohoda ADR': 'HADR',
}
DEFAULT_PREFIX = 'COUR'

_rng = random.SystemRandom()


def to_base36(number: int) -> str:
    """Encode a non-negative integer in lowercase base36."""
    if number < 0:
        raise ValueError("number must be >= 0")
    if number == 0:
        return '0'
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36_ALPHABET[rem])
    return ''.join(reversed(digits))


def _now_ms() -> int:
    return int(time.time() * 1000)


def course_prefix(course_name: Optional[str]) -> str:
    return COURSE_PREFIXES.get(course_name or '', DEFAULT_PREFIX)


def generate_course_code(course_name: Optional[str], now_ms: Optional[int] = None) -> str:
    """Return `<prefix><base36 ms timestamp><4 random base36 chars>` uppercased.

    Uniqueness is not guaranteed here; callers check against the store.
    """
    stamp = to_base36(now_ms if now_ms is not None else _now_ms())
    suffix = ''.join(_rng.choice(BASE36_ALPHABET) for _ in range(4))
    return f"{course_prefix(course_name)}{stamp}{suffix}".upper()


def generate_certificate_number(access_code: str, now_ms: Optional[int] = None) -> str:
    return f"CERT-{access_code}-{now_ms if now_ms is not None else _now_ms()}"


def generate_verification_code() -> str:
    """Opaque public lookup token for a certificate."""
    return secrets.token_hex(8)
