"""Phone number normalization and the live-call safety switch."""

import itertools
import re
import threading
from typing import Optional

from concierge.logging_config import get_logger

logger = get_logger(__name__)

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_to_e164(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    Handles US formats such as "(864) 555-1234", "864-555-1234" and
    "+1 (864) 555-1234", and keeps numbers already written with a "+" country
    code. Returns None when the input cannot be dialed.

    Normalizing an already normalized number returns it unchanged.
    """
    if not phone:
        return None

    digits = _NON_DIGITS.sub("", phone)

    # 10-digit US number
    if len(digits) == 10:
        return f"+1{digits}"

    # 11 digits with US country code
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"

    # Other countries, only when the caller wrote the "+" explicitly
    if phone.strip().startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"

    return None


class DialPolicy:
    """
    Decides which number is actually dialed.

    With live calls disabled, every destination is replaced by one of the
    configured test numbers (round-robin) so the whole pipeline can run
    without ringing real businesses.
    """

    def __init__(self, live_calls_enabled: bool = True, test_numbers: Optional[list[str]] = None):
        self.live_calls_enabled = live_calls_enabled
        self.test_numbers = [n for n in (normalize_phone_to_e164(t) for t in (test_numbers or [])) if n]
        self._cycle = itertools.cycle(self.test_numbers) if self.test_numbers else None
        self._lock = threading.Lock()

    def resolve(self, phone: str) -> Optional[str]:
        """Return the number to dial, or None if the call must not be placed."""
        if self.live_calls_enabled:
            return normalize_phone_to_e164(phone)

        if self._cycle is None:
            logger.warning("live_calls_disabled_no_test_numbers", phone=phone)
            return None

        with self._lock:
            substitute = next(self._cycle)
        logger.info("test_number_substituted", original=phone, substitute=substitute)
        return substitute
