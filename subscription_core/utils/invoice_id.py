"""Invoice identifier generation.

Invoice ids are created locally and handed to the billing provider, which
accepts any unique string up to 200 characters
(``[a-zA-Z0-9_-]``).
"""

import re
import time
import uuid
from typing import Optional

_INVOICE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9-]+_[a-f0-9]{16}_\d{13}$")


def generate_invoice_id(prefix: str = "sub") -> str:
    """Generate a unique invoice id.

    Format: {prefix}_{uuid}_{timestamp}
    Example: sub_a1b2c3d4e5f6a7b8_1700000000000
    """
    token_id = uuid.uuid4().hex[:16]
    timestamp = int(time.time() * 1000)
    return f"{prefix}_{token_id}_{timestamp}"


def validate_invoice_id(invoice_id: str) -> bool:
    """Check invoice id format."""
    if not invoice_id or not isinstance(invoice_id, str):
        return False
    return bool(_INVOICE_ID_PATTERN.match(invoice_id))


def extract_invoice_timestamp(invoice_id: str) -> Optional[int]:
    """Extract the creation timestamp (millis) from an invoice id."""
    if not validate_invoice_id(invoice_id):
        return None
    return int(invoice_id.rsplit("_", 1)[1])
