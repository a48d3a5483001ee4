"""
Local retry counters and cooldown windows.

Failed sessions are counted per wallet. Reaching ``max_retries`` opens a
cooldown window of ``cooldown_minutes`` and starts a new round; the window
length never grows, but the round counter does. Once two rounds have been
completed, the last retry of the next round is a "final strike": that failed
attempt is written on chain as well.

Counters live in an injected key-value store under keys namespaced by a schema
version, so bumping the version resets every wallet's history.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Union

import structlog

from .constants import (
    FINAL_STRIKE_COOLDOWN_ROUNDS,
    RETRY_STATE_KEY_PREFIX,
    RETRY_STATE_SCHEMA_VERSION,
)
from .data_models import RetryState
from .exceptions import CooldownActive
from .utils import now_ms

# Initialize structured logger
logger = structlog.get_logger(__name__)

RETRIES = "retries"
COOLDOWN = "cooldown"
COOLDOWN_COUNT = "cooldown_count"


class KeyValueStore(Protocol):
    """String key-value persistence."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryRetryStore:
    """Process-local store."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileRetryStore:
    """
    Store backed by a JSON object on disk.

    Writes replace the file atomically. The parent directory is created on the
    first write.

    Parameters
    ----------
    path : str or Path
        File location.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(
                "Retry state file unreadable, starting fresh",
                path=str(self.path),
                error=str(e),
            )
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".retry_state.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


def storage_key(kind: str, wallet: str) -> str:
    """
    Namespaced store key.

    Examples
    --------
    >>> storage_key("retries", "W")
    'ageverify_v2_retries_W'
    """
    return f"{RETRY_STATE_KEY_PREFIX}_v{RETRY_STATE_SCHEMA_VERSION}_{kind}_{wallet}"


def _as_int(value: Optional[str]) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


class RetryPolicy:
    """
    Per-wallet retry accounting.

    Parameters
    ----------
    store : KeyValueStore
        Persistence for the counters.
    max_retries : int, default=3
        Failures per round.
    cooldown_minutes : float, default=15
        Length of each cooldown window.
    clock : callable
        Current unix time in milliseconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_retries: int = 3,
        cooldown_minutes: float = 15,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.max_retries = max_retries
        self.cooldown_minutes = cooldown_minutes
        self.clock = clock

    def load(self, wallet: str) -> RetryState:
        return RetryState(
            retry_count=_as_int(self.store.get(storage_key(RETRIES, wallet))),
            cooldown_until=_as_int(self.store.get(storage_key(COOLDOWN, wallet))),
            cooldown_round_count=_as_int(self.store.get(storage_key(COOLDOWN_COUNT, wallet))),
        )

    def save(self, wallet: str, state: RetryState) -> None:
        self.store.set(storage_key(RETRIES, wallet), str(state.retry_count))
        self.store.set(storage_key(COOLDOWN, wallet), str(state.cooldown_until))
        self.store.set(storage_key(COOLDOWN_COUNT, wallet), str(state.cooldown_round_count))

    def check(self, wallet: str) -> RetryState:
        """
        Reject attempts inside a cooldown window.

        Raises
        ------
        CooldownActive
            With the time left in the window.
        """
        state = self.load(wallet)
        now = self.clock()
        if state.cooldown_until > now:
            raise CooldownActive(state.cooldown_until, state.cooldown_until - now)
        return state

    def is_final_strike(self, state: RetryState) -> bool:
        """Whether failing this attempt exhausts the round after two completed rounds."""
        return (
            state.cooldown_round_count >= FINAL_STRIKE_COOLDOWN_ROUNDS
            and state.retry_count + 1 >= self.max_retries
        )

    def record_success(self, wallet: str) -> None:
        for kind in (RETRIES, COOLDOWN, COOLDOWN_COUNT):
            self.store.delete(storage_key(kind, wallet))
        logger.debug("Retry state cleared", wallet=wallet)

    def record_failure(self, wallet: str) -> RetryState:
        """
        Count one failed session.

        Returns
        -------
        RetryState
            The updated counters.
        """
        state = self.load(wallet)
        retries = state.retry_count + 1

        if retries >= self.max_retries:
            state = RetryState(
                retry_count=0,
                cooldown_until=self.clock() + int(self.cooldown_minutes * 60_000),
                cooldown_round_count=state.cooldown_round_count + 1,
            )
            logger.warning(
                "Max retries reached, cooldown started",
                wallet=wallet,
                round=state.cooldown_round_count,
                cooldown_minutes=self.cooldown_minutes,
            )
        else:
            state = RetryState(
                retry_count=retries,
                cooldown_until=state.cooldown_until,
                cooldown_round_count=state.cooldown_round_count,
            )
            logger.info(
                "Failed attempt recorded",
                wallet=wallet,
                attempt=retries,
                max_retries=self.max_retries,
            )

        self.save(wallet, state)
        return state

    def reset(self, wallet: str) -> None:
        self.record_success(wallet)
