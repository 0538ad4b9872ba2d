"""ギャラリー API ルート

GET /api/gallery   → 200 [GalleryEvent...]（新しい順）
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from enum import Enum

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from halloo.entrypoints.api.deps import get_components, get_current_uid
from halloo.entrypoints.factory import Components

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/gallery", tags=["gallery"])


class GalleryEventResponse(BaseModel):
    id: str
    profile_id: str
    event_type: str
    created_at: datetime
    data: dict


def _payload_dict(payload) -> dict:
    return {
        k: (v.value if isinstance(v, Enum) else v) for k, v in asdict(payload).items()
    }


@router.get("", response_model=list[GalleryEventResponse])
def list_gallery(
    profile_id: str | None = None,
    uid: str = Depends(get_current_uid),
    components: Components = Depends(get_components),
) -> list[GalleryEventResponse]:
    """ギャラリー履歴を返す（profile_id で絞り込み可）"""
    events = components.store.list_gallery_events(uid)
    if profile_id is not None:
        events = [e for e in events if e.profile_id == profile_id]
    return [
        GalleryEventResponse(
            id=e.id,
            profile_id=e.profile_id,
            event_type=e.event_type.value,
            created_at=e.created_at,
            data=_payload_dict(e.payload),
        )
        for e in events
    ]
