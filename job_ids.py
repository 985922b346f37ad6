# job_ids.py
import secrets
import time
from typing import Optional

JOB_ID_PREFIX = "job"
RANDOM_BYTES = 8  # 64 bits


def generate_job_id(client_supplied_id: Optional[str] = None, now_ms: Optional[int] = None) -> str:
    """
    Return the client's id unchanged when one is given (idempotency key),
    otherwise `job_<epoch millis>_<16 hex chars>`.

    The embedded timestamp is only there to make ids sortable by eye; the
    submission time lives on the job record.
    """
    if client_supplied_id:
        return client_supplied_id
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{JOB_ID_PREFIX}_{now_ms}_{secrets.token_hex(RANDOM_BYTES)}"
