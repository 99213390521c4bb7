from __future__ import annotations

import uuid


def new_uuid() -> str:
    """Primary keys for synced entities; clients may generate their own."""
    return str(uuid.uuid4())
