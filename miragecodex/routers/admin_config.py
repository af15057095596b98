from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.database import get_db
from miragecodex.errors import InvalidRequestError, NotFoundError
from miragecodex.models import User
from miragecodex.project_config import CONFIG_KEYS, get_config_value, set_project_config
from miragecodex.utils import require_admin_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/config", tags=["admin"])


def _known_key(key: str) -> str:
    if key not in CONFIG_KEYS:
        raise NotFoundError(f"Unknown config key: {key}")
    return key


@router.get("/{key}")
async def read_config(
    key: str,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return {"key": _known_key(key), "value": await get_config_value(db, key)}


@router.put("/{key}")
async def write_config(
    key: str,
    value: Dict[str, Any] = Body(...),
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    _known_key(key)
    try:
        stored = await set_project_config(db, key, value)
    except ValueError as e:
        raise InvalidRequestError(str(e)) from e
    logger.info("Admin %s updated config %s", admin.id, key)
    return {"key": key, "value": stored}
