"""プロファイル管理 API ルート

GET    /api/profiles                              → 200 [Profile...]
POST   /api/profiles                              → 201 { id, status: "pendingConfirmation", ... }
DELETE /api/profiles/{id}                         → 204
POST   /api/profiles/{id}/resend-confirmation     → 200 { id, ... }
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from halloo.domain.errors import (
    InvalidPhoneNumber,
    ProfileNotFound,
    QuotaExceeded,
    SendFailed,
)
from halloo.domain.models import ElderlyProfile
from halloo.entrypoints.api.deps import AuthInfo, get_auth_info, get_care_manager, get_current_uid
from halloo.services.care_manager import CareManager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/profiles", tags=["profiles"])


class ProfileRequest(BaseModel):
    name: str
    phone_number: str
    relationship: str = ""
    time_zone: str = "UTC"
    photo_url: str | None = None


class ProfileResponse(BaseModel):
    id: str
    name: str
    phone_number: str
    relationship: str
    status: str
    time_zone: str
    photo_url: str | None = None
    confirmed_at: datetime | None = None
    sms_opted_out: bool = False


def _to_response(p: ElderlyProfile) -> ProfileResponse:
    return ProfileResponse(
        id=p.id,
        name=p.name,
        phone_number=p.phone_number,
        relationship=p.relationship,
        status=p.status.value,
        time_zone=p.time_zone,
        photo_url=p.photo_url,
        confirmed_at=p.confirmed_at,
        sms_opted_out=p.sms_opted_out,
    )


def _caregiver_name(auth: AuthInfo) -> str:
    return auth.display_name or auth.email or "Your caregiver"


@router.get("", response_model=list[ProfileResponse])
def list_profiles(
    uid: str = Depends(get_current_uid),
    manager: CareManager = Depends(get_care_manager),
) -> list[ProfileResponse]:
    """プロファイル一覧を返す"""
    return [_to_response(p) for p in manager.list_profiles(uid)]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ProfileResponse)
def create_profile(
    body: ProfileRequest,
    auth: AuthInfo = Depends(get_auth_info),
    manager: CareManager = Depends(get_care_manager),
) -> ProfileResponse:
    """確認待ちプロファイルを作成し、確認 SMS を送る"""
    try:
        profile = manager.create_profile(
            auth.uid,
            name=body.name,
            phone_number=body.phone_number,
            relationship=body.relationship,
            time_zone=body.time_zone,
            photo_url=body.photo_url,
            caregiver_name=_caregiver_name(auth),
        )
    except InvalidPhoneNumber as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e
    except SendFailed as e:
        # プロファイルは pending で保存済み。resend-confirmation で再送できる
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Profile saved but confirmation SMS could not be sent",
        ) from e
    except QuotaExceeded as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Profile saved but the SMS quota for this period is used up",
        ) from e
    return _to_response(profile)


@router.delete("/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_profile(
    profile_id: str,
    uid: str = Depends(get_current_uid),
    manager: CareManager = Depends(get_care_manager),
) -> None:
    """プロファイルと配下のタスク・メッセージ・ギャラリーを削除する"""
    try:
        manager.delete_profile(uid, profile_id)
    except ProfileNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found"
        ) from e


@router.post("/{profile_id}/resend-confirmation", response_model=ProfileResponse)
def resend_confirmation(
    profile_id: str,
    auth: AuthInfo = Depends(get_auth_info),
    manager: CareManager = Depends(get_care_manager),
) -> ProfileResponse:
    """確認 SMS を再送する（confirmed の場合は何もしない）"""
    try:
        profile = manager.resend_confirmation(
            auth.uid, profile_id, caregiver_name=_caregiver_name(auth)
        )
    except ProfileNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found"
        ) from e
    except SendFailed as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Confirmation SMS could not be sent",
        ) from e
    except QuotaExceeded as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="SMS quota for this period is used up",
        ) from e
    return _to_response(profile)
