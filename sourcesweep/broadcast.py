from __future__ import annotations

import queue
import threading
from typing import Any, Callable, Dict, Iterable, Optional, Protocol

from sourcesweep.log import get_logger
from sourcesweep.models import JobStatus

logger = get_logger("broadcast")


class Observer(Protocol):
    def send(self, snapshot: Dict[str, Any]) -> None:
        """Deliver one job snapshot; raise to be dropped."""

    def close(self) -> None:
        """Called once the broadcaster has dropped the observer."""


class QueueObserver:
    """Bounded mailbox drained by a streaming response.

    A full mailbox means the client stopped reading; ``send`` raises
    :class:`queue.Full` and the broadcaster drops it.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, snapshot: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("observer closed")
        self._queue.put_nowait(snapshot)

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class Broadcaster:
    def __init__(self) -> None:
        self._observers: list[Observer] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)

    def subscribe(
        self,
        observer: Observer,
        jobs: Optional[Callable[[], Iterable[JobStatus]]] = None,
    ) -> bool:
        """Register ``observer`` after sending it every job ``jobs()`` returns.

        The dump is taken under the broadcaster lock, so a mutation published
        meanwhile is delivered after it rather than lost.
        """
        with self._lock:
            try:
                for job in (jobs() if jobs is not None else ()):
                    observer.send(job.model_dump(mode="json"))
            except Exception as e:
                logger.warning("Observer failed during initial dump: %s", e)
                observer.close()
                return False
            self._observers.append(observer)
            logger.info("Observer subscribed (%d total)", len(self._observers))
        return True

    def unsubscribe(self, observer: Observer) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)
                logger.info("Observer unsubscribed (%d total)", len(self._observers))

    def publish(self, job: JobStatus) -> None:
        """Push the full snapshot of ``job`` to every observer."""
        payload = job.model_dump(mode="json")
        with self._lock:
            for observer in list(self._observers):
                try:
                    observer.send(payload)
                except Exception as e:
                    self._observers.remove(observer)
                    observer.close()
                    logger.warning("Dropping observer after failed push for job %s: %s",
                                   job.job_id, e)
