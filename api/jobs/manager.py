import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from jobs.compact_change_feed import run_compaction
from jobs.invalidation_consumer import InvalidationConsumer
from logging_utils import get_logger
from utils.errors import NotFoundError
from utils.service_container import Services

logger = get_logger(__name__)


@dataclass
class JobState:
    running: bool = False
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    error: Optional[str] = None
    stop_requested: bool = False
    last_result: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "stop_requested": self.stop_requested,
            "last_result": self.last_result,
        }


class BackgroundJob:
    """Run `target(stop_event)` in a daemon thread with observable state."""

    def __init__(self, name: str, target: Callable[[threading.Event], Optional[Dict[str, Any]]]):
        self.name = name
        self._target = target
        self._lock = threading.Lock()
        self._state = JobState()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return self._state.as_dict()

    def request_stop(self) -> None:
        with self._lock:
            self._state.stop_requested = True
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        t = self._thread
        if t is not None:
            t.join(timeout)

    def start(self) -> bool:
        """Returns True if a new run was started, False if one is already running."""
        with self._lock:
            if self._state.running:
                return False
            self._state.running = True
            self._state.started_at = time.time()
            self._state.ended_at = None
            self._state.error = None
            self._state.stop_requested = False
            self._stop = threading.Event()

        stop = self._stop

        def _runner() -> None:
            try:
                result = self._target(stop)
                with self._lock:
                    self._state.last_result = result
            except Exception:
                logger.exception("Background job failed | job=%s", self.name)
                with self._lock:
                    self._state.error = traceback.format_exc()
            finally:
                with self._lock:
                    self._state.running = False
                    self._state.ended_at = time.time()

        t = threading.Thread(target=_runner, name=self.name, daemon=True)
        self._thread = t
        t.start()
        return True


class JobManager:
    def __init__(self, jobs: Dict[str, BackgroundJob]) -> None:
        self.jobs = jobs

    def get(self, name: str) -> BackgroundJob:
        try:
            return self.jobs[name]
        except KeyError:
            raise NotFoundError(f"Unknown job {name}", details={"job": name}) from None

    def states(self) -> Dict[str, Dict[str, Any]]:
        return {name: job.get_state() for name, job in self.jobs.items()}

    def stop_all(self, timeout: float = 5.0) -> None:
        for job in self.jobs.values():
            job.request_stop()
        for job in self.jobs.values():
            job.join(timeout)


def build_job_manager(services: Services, config: Dict[str, Any]) -> JobManager:
    consumer = InvalidationConsumer(
        feed=services.feed,
        cache=services.cache,
        name=config.get("INVALIDATION_CONSUMER_NAME"),
        batch_size=int(config.get("FEED_PAGE_LIMIT", 500)),
    )
    poll = float(config.get("INVALIDATION_POLL_SECONDS", 1.0))

    def _consume(stop: threading.Event) -> None:
        consumer.run_forever(stop, poll_interval=poll)

    def _compact(_stop: threading.Event) -> Dict[str, Any]:
        return run_compaction(
            feed=services.feed,
            retention_days=float(config.get("FEED_RETENTION_DAYS", 7.0)),
        )

    return JobManager(
        {
            "invalidation_consumer": BackgroundJob("invalidation_consumer", _consume),
            "compact_change_feed": BackgroundJob("compact_change_feed", _compact),
        }
    )
