"""
Submitting identity for reports.

The pipeline only ever sees an Identity; where it comes from (a placeholder
reporter id today, a real session later) is decided here.
"""
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class Identity:
    user_id: str
    authenticated: bool = False
    source: str = "anonymous"


def system_identity(user_id: str) -> Identity:
    """Identity used for submissions arriving from a partner system (webhooks)."""
    return Identity(user_id=user_id, authenticated=True, source="system")


def resolve_identity(
    headers: Mapping[str, str],
    fallback_user_id: str,
    authenticated: bool = False,
) -> Identity:
    """Pick the reporter identity for a request.

    A reporter id header is only trusted on an authenticated request;
    everyone else submits as the configured anonymous reporter.
    """
    claimed: Optional[str] = (headers.get("X-Reporter-Id") or "").strip() or None
    if authenticated and claimed:
        return Identity(user_id=claimed, authenticated=True, source="header")
    return Identity(user_id=fallback_user_id, authenticated=False, source="anonymous")
