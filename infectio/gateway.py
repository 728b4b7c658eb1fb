"""Process-wide, exactly-once initialization of the analysis engines."""

from __future__ import annotations

import asyncio
import threading
from enum import Enum
from typing import Callable, Optional

from .engines import AnalysisEngines
from .logging import get_logger

logger = get_logger("gateway")


class GatewayState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    FATAL = "fatal"


class GatewayError(RuntimeError):
    """Raised to every caller once engine initialization has failed."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Analysis engines unavailable: {reason}")
        self.reason = reason


class EngineGateway:
    """Lazily builds one :class:`AnalysisEngines` and hands it to every runner.

    The initialization work runs at most once per gateway. Callers that arrive
    while it is in flight block on the same lock and observe the same outcome.
    A failure is sticky: later callers get the original reason without a retry.
    """

    def __init__(self, factory: Callable[[], AnalysisEngines] = AnalysisEngines) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._engines: Optional[AnalysisEngines] = None
        self._fatal: Optional[str] = None
        self.initializations = 0

    @property
    def state(self) -> GatewayState:
        if self._engines is not None:
            return GatewayState.READY
        if self._fatal is not None:
            return GatewayState.FATAL
        return GatewayState.UNINITIALIZED

    def ensure_initialized_sync(self) -> AnalysisEngines:
        """Blocking variant of :meth:`ensure_initialized`."""
        with self._lock:
            if self._engines is not None:
                return self._engines
            if self._fatal is not None:
                raise GatewayError(self._fatal)

            self.initializations += 1
            logger.debug("Initializing analysis engines")
            try:
                engines = self._factory()
                engines.initialize()
            except Exception as exc:
                self._fatal = str(exc) or exc.__class__.__name__
                logger.error("Engine initialization failed: %s", self._fatal)
                raise GatewayError(self._fatal) from exc
            self._engines = engines
            logger.debug("Analysis engines ready")
            return engines

    async def ensure_initialized(self) -> AnalysisEngines:
        """Return the shared engines, initializing them on first use.

        Raises :class:`GatewayError` when initialization failed (now or earlier).
        """
        engines = self._engines
        if engines is not None:
            return engines
        if self._fatal is not None:
            raise GatewayError(self._fatal)
        return await asyncio.to_thread(self.ensure_initialized_sync)


_default_gateway: Optional[EngineGateway] = None
_default_lock = threading.Lock()


def default_gateway() -> EngineGateway:
    """Return the gateway shared by every session manager in this process."""
    global _default_gateway
    with _default_lock:
        if _default_gateway is None:
            _default_gateway = EngineGateway()
        return _default_gateway


__all__ = ["EngineGateway", "GatewayError", "GatewayState", "default_gateway"]
