from starlette.requests import Request

from ledger_api.core.config import get_settings


def get_actor_id(request: Request) -> str | None:
    """Attribution only: the caller-supplied actor id, or None for machine ingestion."""
    raw = request.headers.get(get_settings().actor_header)
    if raw is None:
        return None
    return raw.strip() or None
