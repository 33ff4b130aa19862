from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

CAP_WRITE = "files:write"
CAP_READ = "files:read"
CAP_DELETE = "files:delete"
ALL_CAPABILITIES = (CAP_WRITE, CAP_READ, CAP_DELETE)


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller identity.

    Security notes:
    - Capabilities are granted by the server-side key mapping, never by the caller.

    """

    actor_id: str
    capabilities: List[str]

    def allows(self, capability: str) -> bool:
        return capability in (self.capabilities or [])


def anonymous_actor() -> Actor:
    """Actor used when no key is configured and auth is not required."""

    return Actor(actor_id="anonymous", capabilities=list(ALL_CAPABILITIES))


def _parse_api_keys(raw: str) -> Dict[str, Actor]:
    """Parse SAFEINGEST_API_KEYS into an API key -> Actor mapping.

    Format (semicolon-separated entries):
      <APIKEY>:<ACTOR_ID>:<cap1,cap2,cap3>

    Example:
      SAFEINGEST_API_KEYS="k1:uploader:files:write,files:read;k2:admin:files:read,files:delete"

    Security notes:
    - Invalid entries are ignored (fail closed by omission).

    """

    out: Dict[str, Actor] = {}
    for entry in (raw or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":", 2)
        if len(parts) != 3:
            continue
        key, actor_id, caps_raw = parts[0].strip(), parts[1].strip(), parts[2].strip()
        if not key or not actor_id:
            continue
        caps = [c.strip() for c in caps_raw.split(",") if c.strip()]
        out[key] = Actor(actor_id=actor_id, capabilities=caps)
    return out


def load_auth_config() -> Dict[str, Actor]:
    return _parse_api_keys(os.environ.get("SAFEINGEST_API_KEYS", ""))


def requires_auth(mapping: Dict[str, Actor]) -> bool:
    """True if SAFEINGEST_REQUIRE_AUTH is set or at least one key is configured."""

    if os.environ.get("SAFEINGEST_REQUIRE_AUTH", "").strip().lower() in {"1", "true", "yes"}:
        return True
    return bool(mapping)


def authenticate(api_key: Optional[str], mapping: Dict[str, Actor]) -> Optional[Actor]:
    """Return the Actor for an API key, or None.

    Security notes:
    - Compares against every configured key in constant time.

    """

    if not api_key:
        return None

    found: Optional[Actor] = None
    for k, actor in mapping.items():
        if hmac.compare_digest(k.encode("utf-8"), api_key.encode("utf-8")):
            found = actor
    return found


def resolve_actor(api_key: Optional[str], mapping: Dict[str, Actor], *, must_auth: bool) -> Optional[Actor]:
    """Actor for a request, or None when authentication is required and fails."""

    if not must_auth:
        return anonymous_actor()
    return authenticate(api_key, mapping)


def missing_capability(actor: Actor, *capabilities: str) -> Optional[str]:
    """First capability the actor lacks, or None."""

    for cap in capabilities:
        if not actor.allows(cap):
            return cap
    return None
