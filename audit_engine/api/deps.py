"""
Shared API dependencies.

The acting principal comes from the external auth layer, which
has already verified it and forwards it in request headers. The
engine treats it as opaque.
"""

import logging

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from audit_engine.config import get_settings
from audit_engine.errors import Conflict, EngineError
from audit_engine.models.base import get_db
from audit_engine.schemas.audit import Actor, Origin
from audit_engine.services.dispatcher import Dispatcher
from audit_engine.services.reputation import ReputationOracle, default_oracle

logger = logging.getLogger(__name__)


def get_current_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_name: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    if not x_actor_id:
        raise HTTPException(
            status_code=401,
            detail={"error": "Unauthenticated", "message": "actor identity is required"},
        )
    return Actor(
        id=x_actor_id,
        name=x_actor_name or x_actor_id,
        role=x_actor_role or "admin",
    )


def get_origin(request: Request) -> Origin:
    return Origin(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        session_id=request.headers.get("x-session-id"),
    )


def get_oracle() -> ReputationOracle:
    return default_oracle()


def http_error(e: Exception) -> HTTPException:
    """Translate an engine error into an HTTP error with a structured reason."""
    if isinstance(e, StaleDataError):
        e = Conflict("record was changed concurrently; re-fetch and retry")
    if isinstance(e, EngineError):
        return HTTPException(status_code=e.status_code, detail=e.to_dict())
    return HTTPException(status_code=400, detail={"error": "BadRequest", "message": str(e)})


class DispatchAfterCommit:
    """
    Pushes newly committed entries to the consumers.

    When inline dispatch is off, background workers pick the
    entries up on their next tick instead.
    """

    def __init__(
        self,
        db: Session = Depends(get_db),
        oracle: ReputationOracle = Depends(get_oracle),
    ):
        self.db = db
        self.oracle = oracle

    def __call__(self) -> None:
        if not get_settings().DISPATCH_INLINE:
            return
        Dispatcher(self.db, oracle=self.oracle).pump()
