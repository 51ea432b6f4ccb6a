import time
import uuid
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_id() -> str:
    return uuid.uuid4().hex


def new_invoice_number(ts: float | None = None) -> str:
    day = datetime.fromtimestamp(
        ts if ts is not None else now_ts(), tz=timezone.utc
    ).strftime("%Y%m%d")
    return f"INV-{day}-{uuid.uuid4().hex[:10].upper()}"


def new_qr_code() -> str:
    return f"VBTIX-{uuid.uuid4().hex.upper()}"
