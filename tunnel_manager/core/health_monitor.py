"""
Background re-verification of the live connection
"""

import abc
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Callable
import logging

from .errors import VerificationFailed

logger = logging.getLogger(__name__)


@dataclass
class FailureReport:
    """Delivered once per failure episode"""
    server_id: Optional[str]
    last_address: Optional[str]
    reason: str
    detected_at: float = field(default_factory=time.time)


class FailureListener(abc.ABC):
    """Receives connection failure reports from the health monitor"""

    @abc.abstractmethod
    def on_connection_failure(self, report: FailureReport):
        raise NotImplementedError


class NetworkHealthMonitor:
    """Periodically re-verifies the tunnel and reports failure once"""

    def __init__(self, verifier, check_interval: float = 10.0,
                 failure_threshold: int = 1):
        self.verifier = verifier
        self.check_interval = check_interval
        self.failure_threshold = max(1, failure_threshold)
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return (self._thread is not None and self._thread.is_alive()
                and self._stop_event is not None and not self._stop_event.is_set())

    def start(self, server_id: Optional[str], address: str,
              listener: FailureListener,
              on_address_change: Optional[Callable[[str], None]] = None):
        """Start watching; any previous run is stopped first"""
        self.stop()

        with self._lock:
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event, server_id, address, listener, on_address_change),
                daemon=True,
                name="Tunnel-Monitor"
            )
            self._thread.start()

        logger.info(f"Starting network monitor for IP: {address}")

    def stop(self, timeout: float = 5.0):
        """Stop the current run; a run that is mid-check will not report"""
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None

        if stop_event is not None:
            stop_event.set()

        if (thread is not None and thread.is_alive()
                and threading.current_thread() is not thread):
            thread.join(timeout=timeout)

    def _run(self, stop_event: threading.Event, server_id: Optional[str],
             address: str, listener: FailureListener,
             on_address_change: Optional[Callable[[str], None]]):
        current = address
        consecutive_failures = 0

        while not stop_event.wait(self.check_interval):
            try:
                observed = self.verifier.verify()
            except VerificationFailed as e:
                observed = None
                reason = str(e)
            except Exception as e:
                logger.error(f"Monitor error: {e}", exc_info=True)
                observed = None
                reason = f"Monitor error: {e}"

            if stop_event.is_set():
                return

            if observed is None:
                consecutive_failures += 1
                logger.warning(
                    f"Connection check failed ({consecutive_failures}/{self.failure_threshold})"
                )
                if consecutive_failures >= self.failure_threshold:
                    stop_event.set()
                    report = FailureReport(server_id, current, reason)
                    try:
                        listener.on_connection_failure(report)
                    except Exception as e:
                        logger.error(f"Failure listener error: {e}", exc_info=True)
                    return
                continue

            consecutive_failures = 0
            if observed != current:
                # Tunnel re-routed; not a failure
                logger.info(f"Tunnel address changed: {current} -> {observed}")
                current = observed
                if on_address_change is not None:
                    on_address_change(observed)
