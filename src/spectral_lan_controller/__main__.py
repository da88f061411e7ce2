"""Entrypoint for the spectral LAN controller."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Iterable, List, Optional

from .api import ApiService
from .config import Config, load_config
from .db import apply_migrations
from .health import BackoffPolicy, HealthMonitor
from .link import DeviceLink
from .logging import configure_logging, get_logger
from .rooms import RoomOrchestrator
from .routines import RoutineStore
from .store import RecordStore
from .transport import DeviceTransport, DryRunTransport, HttpDeviceTransport


async def _repair_loop(
    stop_event: asyncio.Event,
    config: Config,
    rooms: RoomOrchestrator,
    health: HealthMonitor,
) -> None:
    logger = get_logger("spectral.repair")
    if config.repair_interval <= 0:
        logger.info("Periodic repair disabled")
        return
    backoff = BackoffPolicy(
        base=config.repair_backoff_base,
        factor=config.repair_backoff_factor,
        maximum=config.repair_backoff_max,
    )
    logger.info("Repair loop starting", extra={"interval": config.repair_interval})
    failures = 0
    try:
        while not stop_event.is_set():
            await _wait_or_stop(stop_event, config.repair_interval)
            if stop_event.is_set():
                break
            allowed, remaining = await health.allow_attempt("repair")
            if not allowed:
                logger.warning(
                    "Repair suppressed after repeated failures",
                    extra={"cooldown_seconds": round(remaining, 2)},
                )
                await _wait_or_stop(stop_event, remaining)
                continue
            try:
                outcome = await rooms.repair()
            except Exception as exc:
                failures += 1
                logger.exception("Repair pass failed")
                await health.record_failure("repair", exc)
                await _wait_or_stop(stop_event, backoff.delay(failures))
                continue
            failures = 0
            await health.record_success("repair")
            logger.debug(
                "Repair pass complete",
                extra={
                    "rooms_changed": len(outcome.changed_room_ids),
                    "devices_changed": len(outcome.changed_device_ids),
                },
            )
    except asyncio.CancelledError:
        logger.info("Repair loop cancelled")
        raise
    finally:
        logger.info("Repair loop stopped")


async def _startup_discovery(config: Config, rooms: RoomOrchestrator, health: HealthMonitor) -> None:
    logger = get_logger("spectral.discovery")
    if not config.discovery_on_start or not config.discovery_subnets:
        return
    try:
        paired = await rooms.discover_devices()
    except Exception as exc:
        logger.exception("Startup discovery failed")
        await health.record_failure("discovery", exc)
        return
    await health.record_success("discovery")
    logger.info("Startup discovery complete", extra={"paired": [device.id for device in paired]})


async def _api_loop(stop_event: asyncio.Event, service: ApiService, health: HealthMonitor) -> None:
    logger = get_logger("spectral.api")
    try:
        await service.start()
        await health.record_success("api")
    except Exception as exc:
        logger.exception("API server failed to start")
        await health.record_failure("api", exc)
        stop_event.set()
        raise
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        logger.info("API loop stopped")


def _build_transport(config: Config) -> DeviceTransport:
    if config.dry_run:
        return DryRunTransport()
    return HttpDeviceTransport(config)


async def _run_async(config: Config) -> None:
    logger = get_logger("spectral")
    stop_event = asyncio.Event()
    store = RecordStore(config.db_path)
    await store.start()
    transport = _build_transport(config)
    link = DeviceLink(config, transport, store)
    rooms = RoomOrchestrator(config, store, link, RoutineStore(store.db))
    health = HealthMonitor(
        ("repair", "api", "discovery"),
        failure_threshold=config.subsystem_failure_threshold,
        cooldown_seconds=config.subsystem_failure_cooldown,
    )
    api = ApiService(config, store, rooms, link, health=health)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    tasks: List[asyncio.Task[None]] = []
    try:
        await rooms.load()
        tasks = [
            asyncio.create_task(_repair_loop(stop_event, config, rooms, health)),
            asyncio.create_task(_api_loop(stop_event, api, health)),
            asyncio.create_task(_startup_discovery(config, rooms, health)),
        ]
        logger.info(
            "Controller services started",
            extra={
                "api_port": config.api_port,
                "db_path": str(config.db_path),
                "dry_run": config.dry_run,
                "monitoring": config.monitor_enabled,
            },
        )
        await stop_event.wait()
    finally:
        await _shutdown_tasks(tasks, logger)
        await rooms.close()
        await link.stop()
        await transport.aclose()
        await store.stop()
        logger.info("Controller shutdown complete")


async def _shutdown_tasks(tasks: Iterable[asyncio.Task[None]], logger: logging.Logger) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error("Service task ended with an error", exc_info=result)


async def _wait_or_stop(stop_event: asyncio.Event, delay: float) -> None:
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("spectral")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    apply_migrations(config.db_path)
    if config.migrate_only:
        logger.info("Migrations complete; exiting per configuration.")
        return
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
