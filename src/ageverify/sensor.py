"""
Sensor and camera collaborators.

The inference models and the camera are external to the core. This module
defines the capabilities the liveness loop consumes and the lifecycle around
them: model loading with a per-attempt timeout, one delayed retry and an
optional reduced-capability fallback, and a scoped capture session that stops
the camera exactly once on every exit path.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Optional,
    Protocol,
    runtime_checkable,
)

import structlog

from .config import VerifyConfig
from .data_models import DetectionResult
from .exceptions import ModelLoadTimeout, SensorUnavailable

# Initialize structured logger
logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


@runtime_checkable
class Sensor(Protocol):
    """
    Per-frame inference capability.

    ``load`` must be idempotent; ``detect`` is called many times per session.
    """

    async def load(self, model_base_path: str) -> None:
        ...

    async def detect(self, frame: Any) -> DetectionResult:
        ...


@runtime_checkable
class FrameSource(Protocol):
    """Camera capture capability."""

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    def capture_frame(self) -> Any:
        ...


class CaptureSession:
    """
    Started frame source whose release is guarded to run once.

    Parameters
    ----------
    source : FrameSource
        Underlying camera.
    """

    def __init__(self, source: FrameSource) -> None:
        self.source = source
        self.frames_captured = 0
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def capture_frame(self) -> Any:
        if self._released:
            raise SensorUnavailable("Capture session already released")
        self.frames_captured += 1
        return self.source.capture_frame()

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self.source.stop()
        logger.debug("Capture released", frames_captured=self.frames_captured)


@asynccontextmanager
async def open_capture(source: FrameSource) -> AsyncIterator[CaptureSession]:
    """
    Start the camera for the duration of a block.

    Examples
    --------
    >>> async def run(camera):
    ...     async with open_capture(camera) as capture:
    ...         frame = capture.capture_frame()
    """
    try:
        await source.start()
    except Exception as e:
        raise SensorUnavailable(f"Camera could not be started: {e}") from e

    session = CaptureSession(source)
    try:
        yield session
    finally:
        await session.release()


async def _load_once(sensor: Sensor, model_base_path: str, timeout_seconds: float) -> None:
    try:
        await asyncio.wait_for(sensor.load(model_base_path), timeout_seconds)
    except asyncio.TimeoutError:
        raise
    except Exception as e:
        raise SensorUnavailable(f"Model loading failed: {e}", model_base_path) from e


async def load_sensor(
    sensor: Sensor,
    config: Optional[VerifyConfig] = None,
    fallback: Optional[Sensor] = None,
    sleep: SleepFn = asyncio.sleep,
) -> Sensor:
    """
    Load the inference models, retrying once and falling back if needed.

    Each attempt is bounded by ``config.model_load_timeout_ms``; after a
    timeout the loader waits ``config.model_retry_delay_ms`` and tries once
    more. If the retry also times out, the fallback sensor (a reduced
    capability path, e.g. geometry-only age estimation) is loaded instead.

    Parameters
    ----------
    sensor : Sensor
        Full-capability sensor.
    config : VerifyConfig, optional
        Model path and timing.
    fallback : Sensor, optional
        Reduced-capability sensor.
    sleep : callable
        Awaitable sleep, injectable for tests.

    Returns
    -------
    Sensor
        The sensor that finished loading.

    Raises
    ------
    ModelLoadTimeout
        If every attempt timed out and no fallback is available.
    SensorUnavailable
        If loading failed for any other reason.
    """
    config = config or VerifyConfig()
    timeout_seconds = config.model_load_timeout_ms / 1000
    attempts = 0

    for attempt in range(2):
        if attempt > 0:
            logger.warning(
                "Model loading timed out, retrying",
                delay_ms=config.model_retry_delay_ms,
            )
            await sleep(config.model_retry_delay_ms / 1000)

        attempts += 1
        try:
            await _load_once(sensor, config.model_base_path, timeout_seconds)
        except asyncio.TimeoutError:
            continue

        logger.info("Models loaded", attempts=attempts, path=config.model_base_path)
        return sensor

    if fallback is None:
        raise ModelLoadTimeout(timeout_seconds, attempts)

    logger.warning("Falling back to reduced-capability sensor", attempts=attempts)
    try:
        await _load_once(fallback, config.model_base_path, timeout_seconds)
    except asyncio.TimeoutError:
        raise ModelLoadTimeout(timeout_seconds, attempts + 1)
    return fallback
