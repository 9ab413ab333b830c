"""
FastAPI dependencies shared by the v1 routers.

The identity provider sits in front of this service and forwards the
verified subject id in the ``X-Subject-Id`` header.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header

from backend.carenest.container import ServiceContainer
from backend.carenest.core.errors import AuthError, PermissionDeniedError
from backend.carenest.storage.entity_store import Collection

logger = logging.getLogger(__name__)


def get_caller_id(
    x_subject_id: Optional[str] = Header(None, alias="X-Subject-Id"),
) -> Optional[str]:
    """Caller identity or None; write operations reject None themselves."""
    if x_subject_id is None:
        return None
    return x_subject_id.strip() or None


def authorize_subject_read(
    container: ServiceContainer,
    caller_id: Optional[str],
    subject_id: str,
) -> None:
    """A subject's locations are visible to the subject and its guardian only."""
    if not caller_id:
        raise AuthError()
    if caller_id == subject_id:
        return

    item = container.store.get(Collection.SUBJECTS, {"id": subject_id})
    if item is not None and item.get("guardian_id") == caller_id:
        return

    logger.warning(
        "Caller %s denied access to locations of %s", caller_id, subject_id,
        extra={"subject_id": subject_id},
    )
    raise PermissionDeniedError(
        "Not allowed to view this subject's locations",
        subject_id=subject_id,
    )
