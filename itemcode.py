"""Item codes: unique item ids and the scannable QR code printed on each item."""

import base64
import json
import secrets
import string
import time
from io import BytesIO

import qrcode

_ALPHABET = string.digits + string.ascii_uppercase


def generate_item_id() -> str:
    """EW + millisecond timestamp + 5 random base-36 characters."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(5))
    return f"EW{int(time.time() * 1000)}{suffix}"


def code_payload(item_id: str, name: str, category: str, type_: str, department: str, reported_by: str) -> str:
    return json.dumps({
        "itemId": item_id,
        "name": name,
        "category": category,
        "type": type_,
        "department": department,
        "reportedBy": reported_by,
    })


def qr_data_url(payload: str) -> str:
    img = qrcode.make(payload)
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")

