#!/usr/bin/env python3
"""
Background sync loop.

Every `interval` seconds, while the device is online, runs one pass of the
retry queue plus never-attempted local orders and hands the results to every
registered listener. Errors are logged and never stop the loop.

Also runnable standalone (`possync-worker`) against the local database when
the agent API is not running.
"""

import argparse
import asyncio
import inspect
import sys
import traceback
from typing import Awaitable, Callable, List, Optional, Union

from ..app.config import settings
from ..app.logs import json_log
from ..app.models import SyncResult
from ..app.reconciler import SyncReconciler

Listener = Callable[[List[SyncResult]], Union[None, Awaitable[None]]]


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _always_online() -> bool:
    return True


class SyncLoop:
    def __init__(
        self,
        reconciler: SyncReconciler,
        interval: Optional[float] = None,
        is_online: Optional[Callable[[], Union[bool, Awaitable[bool]]]] = None,
    ):
        self.reconciler = reconciler
        self.interval = float(interval if interval is not None else settings.sync_interval_seconds)
        self.is_online = is_online or _always_online
        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, listener: Optional[Listener] = None) -> None:
        # A second start only registers the listener.
        if listener is not None:
            self.add_listener(listener)
        if self.is_running():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._listeners = []
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _online(self) -> bool:
        try:
            return bool(await _maybe_await(self.is_online()))
        except Exception as ex:
            json_log("warning", "sync.loop.online_check_failed", error=str(ex))
            return False

    async def _notify(self, results: List[SyncResult]) -> None:
        for listener in list(self._listeners):
            try:
                await _maybe_await(listener(results))
            except Exception as ex:
                json_log("error", "sync.loop.listener_error", error=str(ex))
                traceback.print_exc(file=sys.stderr)

    async def sync_now(self) -> List[SyncResult]:
        """One pass regardless of connectivity; listeners are notified."""
        results = await self.reconciler.process_sync_queue()
        await self._notify(results)
        return results

    async def tick(self) -> List[SyncResult]:
        if not await self._online():
            return []
        try:
            results = await self.reconciler.process_sync_queue()
        except Exception as ex:
            # Never crash the loop due to a failed pass.
            json_log("error", "sync.loop.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)
            return []
        if results:
            json_log(
                "info",
                "sync.loop.tick",
                attempted=len(results),
                synced=sum(1 for r in results if r.success and not r.skipped),
                failed=sum(1 for r in results if not r.success),
            )
        await self._notify(results)
        return results

    async def _run(self) -> None:
        reset = await self.reconciler.store.reset_interrupted()
        if reset:
            json_log("info", "sync.loop.reset_interrupted", orders=reset)
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()


async def _run_worker(args) -> None:
    from ..app.services import build_services

    services = build_services(args.db)
    try:
        if args.pull:
            try:
                await services.reconciler.pull_remote_orders(per_page=args.pull)
            except Exception as ex:
                json_log("error", "worker.pull.error", error=str(ex))
        if args.once:
            await services.store.reset_interrupted()
            await services.loop.tick()
            return
        services.loop.interval = args.interval
        services.loop.start()
        while services.loop.is_running():
            await asyncio.sleep(1.0)
    finally:
        await services.aclose()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_path)
    parser.add_argument("--interval", type=float, default=settings.sync_interval_seconds)
    parser.add_argument("--pull", type=int, default=0, help="Import up to N recent server orders before syncing")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()
    try:
        asyncio.run(_run_worker(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
