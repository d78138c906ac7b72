from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from wellness.core.context import AppContext


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    context: AppContext
    started_at: float
    auth_token: str = ""


class ShutdownRequest(BaseModel):
    reason: str = Field(default="manual")


class SnoozeRequest(BaseModel):
    minutes: Optional[float] = Field(default=None, gt=0)


class SettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval_minutes: Optional[float] = Field(default=None, gt=0)
    enabled: Optional[bool] = None
    sound_enabled: Optional[bool] = None


class VisibilityRequest(BaseModel):
    visible: bool


class ThresholdRequest(BaseModel):
    minutes: float = Field(gt=0)


class DailyGoalRequest(BaseModel):
    goal: int = Field(ge=1, le=20)
