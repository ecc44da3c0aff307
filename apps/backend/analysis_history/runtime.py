"""Runtime abstractions: clock, scheduler and connectivity.

キャッシュ/同期エンジンはブラウザの `Date.now()`・`setTimeout`・`online`/`offline`
イベントに相当するものを直接参照せず、ここで定義する小さなインターフェース経由で
扱う。テストでは仮想時計や手動の接続状態を差し込んで決定的に検証できる。
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

import httpx

from .logging import logger

ConnectivityListener = Callable[[bool], None]


class Clock(Protocol):
    def now_ms(self) -> int: ...


class Scheduler(Protocol):
    async def sleep(self, delay_ms: int) -> None: ...


class ConnectivityObserver(Protocol):
    @property
    def is_online(self) -> bool: ...

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]: ...


class SystemClock:
    """Wall clock in epoch milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    async def sleep(self, delay_ms: int) -> None:
        await asyncio.sleep(max(0, delay_ms) / 1000)


async def run_periodic(
    scheduler: Scheduler,
    interval_ms: int,
    callback: Callable[[], Awaitable[None]],
    *,
    name: str,
) -> None:
    """Invoke `callback` every `interval_ms` until the task is cancelled.

    コールバック内の例外はログに残して次の周期へ進む。
    """

    while True:
        await scheduler.sleep(interval_ms)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("periodic_task_failed", task=name, error=repr(exc))


class ManualConnectivity:
    """Connectivity state toggled explicitly by the host application.

    状態が変化したときだけ購読者へ通知する（同じ値の再設定では通知しない）。
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online)
        for listener in list(self._listeners):
            listener(online)

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe


class HttpConnectivityProbe(ManualConnectivity):
    """Connectivity derived from polling the history API health endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        path: str = "/healthz",
        timeout_ms: int = 3000,
        client: httpx.AsyncClient | None = None,
        online: bool = True,
    ) -> None:
        super().__init__(online=online)
        self._url = base_url.rstrip("/") + path
        self._timeout = max(1, timeout_ms) / 1000
        self._client = client

    async def probe(self) -> bool:
        """Perform one health check and update the connectivity state."""

        try:
            if self._client is not None:
                response = await self._client.get(self._url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self._url)
            online = response.status_code < 500
        except httpx.HTTPError as exc:
            logger.info("connectivity_probe_failed", url=self._url, error=repr(exc))
            online = False
        self.set_online(online)
        return online
