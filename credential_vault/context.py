"""Request metadata attached to audit entries."""
from typing import Optional

from aiohttp import web
from pydantic import BaseModel, ConfigDict

UNKNOWN = "unknown"


class RequestContext(BaseModel):
    """Where an operation came from: client address and user agent."""

    model_config = ConfigDict(frozen=True)

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: web.Request) -> "RequestContext":
        """Extract client address and user agent from an aiohttp request.

        The first hop of ``X-Forwarded-For`` wins, then ``X-Real-IP``,
        then the transport peer address.
        """
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            ip_address = forwarded.split(",")[0].strip()
        else:
            ip_address = request.headers.get("X-Real-IP") or request.remote
        return cls(
            ip_address=ip_address or UNKNOWN,
            user_agent=request.headers.get("User-Agent", UNKNOWN),
        )
