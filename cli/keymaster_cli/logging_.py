from __future__ import annotations

import logging
import re

_PRIVATE_KEY_RE = re.compile(
    r"-----BEGIN [A-Z0-9 ]*PRIVATE KEY-----.*?(?:-----END [A-Z0-9 ]*PRIVATE KEY-----|$)",
    re.DOTALL,
)
REDACTED = "[REDACTED PRIVATE KEY]"


def redact(text: str) -> str:
    return _PRIVATE_KEY_RE.sub(REDACTED, text)


class RedactPrivateKeys(logging.Filter):
    """Masks PEM private key blocks that end up in a log message or its args."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            return True
        if "PRIVATE KEY" in message:
            record.msg = redact(message)
            record.args = None
        return True


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactPrivateKeys) for f in handler.filters):
            handler.addFilter(RedactPrivateKeys())

    # paramiko logs every negotiation step at INFO
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose else logging.WARNING)
