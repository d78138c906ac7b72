from wellness.logger import setup_logging, logger
from wellness.config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE or None,
    console_level=CONSOLE_LOG_LEVEL,
)

import asyncio
import signal
import time

from wellness.core.context import AppContext, ContextOptions, build_context

shutdown_event = asyncio.Event()


def signal_handler(sig, frame):
    """处理 SIGINT (Ctrl+C) / SIGTERM 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


def _context_options() -> ContextOptions:
    return ContextOptions(
        db_path=WELLNESS_DB_PATH,
        interval_minutes={"water": WATER_INTERVAL_MINUTES, "standup": STANDUP_INTERVAL_MINUTES},
        snooze_minutes=SNOOZE_MINUTES,
        tick_interval_ms=TICK_INTERVAL_MS,
        state_debounce_ms=STATE_DEBOUNCE_MS,
        away_threshold_minutes=AWAY_THRESHOLD_MINUTES,
        activity_poll_interval_ms=ACTIVITY_POLL_INTERVAL_MS,
        auto_pause_kinds=AUTO_PAUSE_KINDS,
        standup_daily_goal=STANDUP_DAILY_GOAL,
        error_log_max_size=ERROR_LOG_MAX_SIZE,
        max_retry_attempts=MAX_RETRY_ATTEMPTS,
        enable_desktop_notifications=ENABLE_DESKTOP_NOTIFICATIONS,
    )


async def _first_use(context: AppContext) -> None:
    """首次运行时启动所有已启用的提醒"""
    app_state = context.state_manager.get_state("app")
    if not app_state["is_first_use"]:
        return
    logger.info("首次运行，自动启动所有已启用的提醒")
    for timer in context.timers.values():
        await timer.start()
    await context.state_manager.update_state(
        "app", {"is_first_use": False, "compatibility_checked": True}, immediate=True
    )


def _input_sources(loop: asyncio.AbstractEventLoop) -> list:
    if not ENABLE_INPUT_HOOKS:
        logger.warning("系统输入钩子已禁用，仅通过 Admin API 上报活动")
        return []
    from wellness.world.input_hooks import PynputInputSource

    return [PynputInputSource(loop)]


async def main():
    # 注册信号处理器
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    loop = asyncio.get_running_loop()
    context = await build_context(_context_options())
    context.error_handler.install(loop)

    try:
        await context.restore()
        await _first_use(context)

        if context.start_monitoring(_input_sources(loop)) is None:
            logger.warning("输入钩子启动失败，改为仅轮询模式")
            context.start_monitoring()

        tasks = [shutdown_event.wait()]
        if ENABLE_ADMIN_HTTP:
            from wellness.admin.http_server import main_loop as admin_http_main
            from wellness.admin.schemas import RuntimeControl

            control = RuntimeControl(
                shutdown_event=shutdown_event,
                context=context,
                started_at=time.time(),
                auth_token=ADMIN_AUTH_TOKEN,
            )
            tasks.append(admin_http_main(control, ADMIN_HTTP_HOST, ADMIN_HTTP_PORT))
        else:
            logger.warning("Admin HTTP 服务已禁用")

        await asyncio.gather(*tasks)
    finally:
        logger.info("关闭 Wellness Reminder...")
        await context.shutdown()
        logger.info("Wellness Reminder 已关闭")


def run() -> None:
    logger.info("启动 Wellness Reminder...")
    asyncio.run(main())


if __name__ == "__main__":
    run()
