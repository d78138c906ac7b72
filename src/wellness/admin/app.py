from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from wellness.logger import logger
from wellness.utils import ms_to_utc_str, now_ms
from wellness.world.reminder import ReminderTimer

from .auth import require_admin_auth
from .schemas import (
    DailyGoalRequest,
    RuntimeControl,
    SettingsUpdate,
    ShutdownRequest,
    SnoozeRequest,
    ThresholdRequest,
    VisibilityRequest,
)

_TIMER_ACTIONS = ("start", "pause", "resume", "stop", "restart", "acknowledge")


def create_app(control: RuntimeControl) -> FastAPI:
    app = FastAPI(title="Wellness Reminder Admin API", version="0.1.0")
    app.state.control = control
    context = control.context

    if not control.auth_token:
        logger.warning("未配置 ADMIN_AUTH_TOKEN，管理 API 将不可访问")

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": ms_to_utc_str(now_ms()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "storage_available": context.store.is_available(),
            "shutdown_requested": control.shutdown_event.is_set(),
        }

    def get_timer(kind: str) -> ReminderTimer:
        try:
            return context.timer(kind)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"未知的提醒类型: {kind}") from None

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/auth/check")
    async def auth_check(request: Request) -> dict[str, bool]:
        await require_admin_auth(request)
        return {"ok": True}

    @app.get("/api/v1/status")
    async def get_status(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return context.get_status()

    # ----------------- 提醒 ----------------
    @app.get("/api/v1/reminders")
    async def list_reminders(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return {"items": [timer.get_current_status() for timer in context.timers.values()]}

    @app.get("/api/v1/reminders/{kind}")
    async def get_reminder(kind: str, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return get_timer(kind).get_current_status()

    @app.post("/api/v1/reminders/{kind}/snooze")
    async def snooze_reminder(kind: str, payload: SnoozeRequest, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        timer = get_timer(kind)
        ok = await timer.snooze(payload.minutes)
        return {"ok": ok, "status": timer.get_current_status()}

    @app.patch("/api/v1/reminders/{kind}/settings")
    async def update_reminder_settings(kind: str, payload: SettingsUpdate, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        timer = get_timer(kind)
        changes = payload.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=400, detail="没有需要更新的设置项")
        if not await timer.update_settings(**changes):
            raise HTTPException(
                status_code=422,
                detail=context.state_manager.last_validation_error or "设置未通过校验",
            )
        return {"ok": True, "status": timer.get_current_status()}

    @app.post("/api/v1/reminders/{kind}/{action}")
    async def reminder_action(kind: str, action: str, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        timer = get_timer(kind)
        if action not in _TIMER_ACTIONS:
            raise HTTPException(status_code=404, detail=f"未知的操作: {action}")
        ok = await getattr(timer, action)()
        logger.info(f"Admin 操作提醒: kind={kind}, action={action}, ok={ok}")
        return {"ok": ok, "status": timer.get_current_status()}

    # ----------------- 活动检测 ----------------
    @app.get("/api/v1/activity")
    async def get_activity(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return context.get_status()["activity"]

    @app.post("/api/v1/activity/ping")
    async def activity_ping(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        context.detector.record_activity("api")
        return {"ok": True, "is_user_active": context.detector.is_user_active()}

    @app.post("/api/v1/activity/visibility")
    async def activity_visibility(payload: VisibilityRequest, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        context.detector.notify_visibility(payload.visible)
        return {"ok": True, "is_user_active": context.detector.is_user_active()}

    @app.put("/api/v1/activity/threshold")
    async def activity_threshold(payload: ThresholdRequest, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        ok = context.detector.set_away_threshold(payload.minutes)
        return {"ok": ok, "away_threshold_ms": context.detector.away_threshold_ms}

    # ----------------- 每日活动 ----------------
    @app.get("/api/v1/daily")
    async def get_daily(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return context.daily_log.get_daily_stats()

    @app.put("/api/v1/daily/goal")
    async def set_daily_goal(payload: DailyGoalRequest, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        ok = await context.daily_log.set_daily_goal(payload.goal)
        return {"ok": ok, "stats": context.daily_log.get_daily_stats()}

    # ----------------- 错误与指标 ----------------
    @app.get("/api/v1/errors")
    async def get_errors(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return {
            "stats": context.error_handler.get_error_stats(),
            "items": context.error_handler.get_error_log(),
        }

    @app.delete("/api/v1/errors")
    async def clear_errors(request: Request) -> dict[str, bool]:
        await require_admin_auth(request)
        context.error_handler.clear_error_log()
        return {"ok": True}

    @app.get("/api/v1/metrics")
    async def get_metrics(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        return {
            "runtime": context.metrics.snapshot(),
            "state": context.state_manager.get_status(),
            "store_write_count": context.store.write_count,
        }

    # ----------------- 控制 ----------------
    @app.post("/api/v1/state/reset")
    async def reset_state(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        ok = await context.reset_state()
        return {"ok": ok, "reminders": [timer.get_current_status() for timer in context.timers.values()]}

    @app.post("/api/v1/control/shutdown")
    async def shutdown(payload: ShutdownRequest, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        logger.warning(f"收到 Admin 关闭请求: reason={payload.reason}")
        control.shutdown_event.set()
        return {"ok": True, "action": "shutdown"}

    return app


__all__ = ["create_app"]
