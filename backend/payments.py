import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

DEFAULT_PAYMENT_NOTE = "Split payment"


def format_amount(amount: float) -> str:
    return f"{amount:.2f}"


def build_venmo_link(recipient: str, amount: float, note: Optional[str] = None) -> str:
    recipient = (recipient or "").strip().lstrip("@")
    if not recipient:
        raise ValueError("Venmo recipient is required")
    if amount < 0:
        raise ValueError("Amount must be >= 0")
    return (
        f"venmo://paycharge?txn=pay&recipients={quote(recipient, safe='')}"
        f"&amount={format_amount(amount)}&note={quote(note or DEFAULT_PAYMENT_NOTE, safe='')}"
    )


def mock_apple_pay(amount: float) -> Dict[str, Any]:
    # No wallet is contacted; the charge is reported as settled straight away.
    if amount < 0:
        raise ValueError("Amount must be >= 0")
    return {
        "status": "completed",
        "transaction_id": f"ap_{uuid.uuid4().hex[:12]}",
        "amount": format_amount(amount),
        "completed_at": datetime.now(timezone.utc).isoformat(),
    }
