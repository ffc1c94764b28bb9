"""TwiML generation for SMS replies.

Handles:
- XML escaping for all dynamic content
- Unicode normalization and control character removal
"""

import re
import unicodedata
import xml.sax.saxutils as saxutils

FALLBACK_REPLY = "Thanks for your message. - AI Concierge"


def sanitize_message_text(text: str, fallback: str | None = None) -> str:
    """
    Sanitize text for a Twilio <Message> body.

    - Normalizes Unicode (NFKC)
    - Removes control characters (keeps newlines, SMS bodies are multi-line)
    - Collapses runs of spaces and tabs
    - Escapes for XML
    - Returns fallback if empty
    """
    if not text:
        text = fallback or FALLBACK_REPLY

    t = unicodedata.normalize("NFKC", text)
    t = "".join(ch for ch in t if ch in ["\n", "\t"] or ord(ch) >= 32)
    t = re.sub(r"[ \t]+", " ", t).strip()

    if not t:
        t = fallback or FALLBACK_REPLY

    return saxutils.escape(t)


def build_message_twiml(message: str) -> str:
    """TwiML that replies to an inbound SMS with one message."""
    body = sanitize_message_text(message)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Message>{body}</Message>
</Response>"""
