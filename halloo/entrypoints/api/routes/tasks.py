"""タスク（習慣）API ルート

GET    /api/profiles/{profile_id}/tasks         → 200 [Task...]
POST   /api/profiles/{profile_id}/tasks         → 201 { id, next_scheduled_date, ... }
PATCH  /api/tasks/{profile_id}/{task_id}        → 200 { id, status, ... }
       body: { "action": "pause" | "resume" | "archive" }
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from halloo.domain.errors import ProfileNotFound, TaskNotFound
from halloo.domain.models import Task, TaskFrequency, Weekday
from halloo.domain.recurrence import upcoming
from halloo.entrypoints.api.deps import get_care_manager, get_current_uid
from halloo.services.care_manager import CareManager

logger = logging.getLogger(__name__)
router = APIRouter(tags=["tasks"])

_UPCOMING_COUNT = 3


class TaskRequest(BaseModel):
    title: str
    scheduled_time: time
    frequency: TaskFrequency = TaskFrequency.DAILY
    description: str = ""
    custom_days: list[Weekday] = []
    start_date: date | None = None
    end_date: date | None = None
    deadline_minutes: int | None = None
    requires_photo: bool = False


class TaskUpdateRequest(BaseModel):
    action: Literal["pause", "resume", "archive"]


class TaskResponse(BaseModel):
    id: str
    profile_id: str
    title: str
    description: str
    frequency: str
    scheduled_time: str
    custom_days: list[str]
    status: str
    next_scheduled_date: datetime
    upcoming: list[datetime]
    completion_count: int
    missed_count: int
    is_overdue: bool
    last_completed_at: datetime | None = None
    last_reminder_sent_at: datetime | None = None


def _to_response(t: Task) -> TaskResponse:
    return TaskResponse(
        id=t.id,
        profile_id=t.profile_id,
        title=t.title,
        description=t.description,
        frequency=t.frequency.value,
        scheduled_time=t.scheduled_time.strftime("%H:%M"),
        custom_days=[d.value for d in t.custom_days],
        status=t.status.value,
        next_scheduled_date=t.next_scheduled_date,
        upcoming=upcoming(t, datetime.now(timezone.utc), _UPCOMING_COUNT)
        if t.is_active
        else [],
        completion_count=t.completion_count,
        missed_count=t.missed_count,
        is_overdue=t.is_overdue,
        last_completed_at=t.last_completed_at,
        last_reminder_sent_at=t.last_reminder_sent_at,
    )


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


@router.get("/profiles/{profile_id}/tasks", response_model=list[TaskResponse])
def list_tasks(
    profile_id: str,
    uid: str = Depends(get_current_uid),
    manager: CareManager = Depends(get_care_manager),
) -> list[TaskResponse]:
    """プロファイルのタスク一覧を返す"""
    try:
        tasks = manager.list_tasks(uid, profile_id)
    except ProfileNotFound as e:
        raise _not_found("Profile not found") from e
    return [_to_response(t) for t in tasks]


@router.post(
    "/profiles/{profile_id}/tasks",
    status_code=status.HTTP_201_CREATED,
    response_model=TaskResponse,
)
def create_task(
    profile_id: str,
    body: TaskRequest,
    uid: str = Depends(get_current_uid),
    manager: CareManager = Depends(get_care_manager),
) -> TaskResponse:
    """タスクを作成する"""
    try:
        task = manager.create_task(
            uid,
            profile_id,
            title=body.title,
            scheduled_time=body.scheduled_time,
            frequency=body.frequency,
            description=body.description,
            custom_days=tuple(body.custom_days),
            start_date=body.start_date,
            end_date=body.end_date,
            deadline_minutes=body.deadline_minutes,
            requires_photo=body.requires_photo,
        )
    except ProfileNotFound as e:
        raise _not_found("Profile not found") from e
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e
    return _to_response(task)


@router.patch("/tasks/{profile_id}/{task_id}", response_model=TaskResponse)
def update_task(
    profile_id: str,
    task_id: str,
    body: TaskUpdateRequest,
    uid: str = Depends(get_current_uid),
    manager: CareManager = Depends(get_care_manager),
) -> TaskResponse:
    """タスクを一時停止・再開・アーカイブする"""
    actions = {
        "pause": manager.pause_task,
        "resume": manager.resume_task,
        "archive": manager.archive_task,
    }
    try:
        task = actions[body.action](uid, profile_id, task_id)
    except TaskNotFound as e:
        raise _not_found("Task not found") from e
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e
    return _to_response(task)
