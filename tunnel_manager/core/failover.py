"""
Ranked, session-scoped failover to alternate servers
"""

import concurrent.futures
import threading
from typing import Optional, List, Callable
import logging

from .types import Server, HealthSample, FailoverSession, FailoverOutcome
from .errors import TunnelManagerError, FailoverExhausted
from .health_monitor import FailureListener, FailureReport

logger = logging.getLogger(__name__)

LatencyProber = Callable[[Server], Optional[float]]


def rank_candidates(samples: List[HealthSample]) -> List[Server]:
    """
    Reachable servers ordered by ascending latency

    Unreachable samples are dropped. The sort is stable, so equal latencies
    keep the order the samples were given in.
    """
    reachable = [sample for sample in samples if sample.reachable]
    reachable.sort(key=lambda sample: sample.latency_ms)
    return [sample.server for sample in reachable]


class FailoverController(FailureListener):
    """Switches to the fastest untried server after a connection failure"""

    def __init__(self, supervisor, store, session: FailoverSession,
                 prober: LatencyProber, max_probe_workers: int = 16):
        self.supervisor = supervisor
        self.store = store
        self.session = session
        self.prober = prober
        self.max_probe_workers = max_probe_workers
        self._guard = threading.Lock()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def in_progress(self) -> bool:
        return self._guard.locked()

    def on_connection_failure(self, report: FailureReport):
        """Start one failover sequence in the background"""
        if not self.supervisor.auto_failover_enabled:
            logger.info("[FAILOVER] Auto-failover disabled, ignoring failure report")
            return

        if not self._guard.acquire(blocking=False):
            logger.info("[FAILOVER] Failover already in progress.")
            return

        logger.info("[FAILOVER] Connection failure detected. Initiating failover sequence.")
        try:
            self._thread = threading.Thread(
                target=self._run_guarded,
                args=(report,),
                daemon=True,
                name="Failover"
            )
            self._thread.start()
        except RuntimeError:
            self._guard.release()
            raise

    def run(self, report: Optional[FailureReport] = None) -> FailoverOutcome:
        """Run a failover sequence in the calling thread"""
        if not self._guard.acquire(blocking=False):
            logger.info("[FAILOVER] Failover already in progress.")
            return FailoverOutcome(False, reason="Failover already in progress")
        return self._run_guarded(report)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a background sequence finishes"""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def cancel(self):
        """Abandon the remaining candidates of a running sequence"""
        if self.in_progress:
            logger.info("[FAILOVER] Cancellation requested")
            self._cancel.set()

    def _run_guarded(self, report: Optional[FailureReport]) -> FailoverOutcome:
        self._cancel.clear()
        try:
            return self._sequence(report)
        except Exception as e:
            logger.error(f"[FAILOVER] An unexpected error occurred during the failover process: {e}",
                         exc_info=True)
            self.supervisor.notify_callbacks('auto_failover', False, None)
            return FailoverOutcome(False, reason=str(e))
        finally:
            self._guard.release()
            logger.info("[FAILOVER] Failover sequence finished.")

    def probe_candidates(self, candidates: List[Server]) -> List[HealthSample]:
        """Measure latency of every candidate concurrently"""
        def probe(server: Server) -> HealthSample:
            try:
                latency = self.prober(server)
            except Exception as e:
                logger.debug(f"[FAILOVER] Probe of {server.name} failed: {e}")
                latency = None
            return HealthSample(server=server, latency_ms=latency)

        workers = max(1, min(self.max_probe_workers, len(candidates)))
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="latency-probe"
        ) as executor:
            return list(executor.map(probe, candidates))

    def _sequence(self, report: Optional[FailureReport]) -> FailoverOutcome:
        failed_id = (report.server_id if report and report.server_id
                     else self.store.get_active_id())
        if failed_id:
            self.session.add(failed_id)
            logger.info(f"[FAILOVER] Added server {failed_id} to the session failed list.")

        self.supervisor.disconnect(silent=True)

        servers = self.store.list().servers
        candidates = [server for server in servers if server.id not in self.session]

        if not candidates:
            # Next manual connect may retry everything
            self.session.clear()
            return self._exhausted(
                "No other servers to try. All have failed this session.", []
            )

        logger.info(f"[FAILOVER] Ranking {len(candidates)} available servers by latency...")
        ranked = rank_candidates(self.probe_candidates(candidates))

        if not ranked:
            return self._exhausted(
                "No available servers responded to ping. Cannot failover.", []
            )

        attempted: List[str] = []
        for server in ranked:
            if self._cancel.is_set():
                logger.info("[FAILOVER] Cancelled by user disconnect")
                return FailoverOutcome(False, attempted=attempted, reason="cancelled")

            attempted.append(server.id)
            logger.info(f"[FAILOVER] Attempting to connect to the next fastest server: {server.name}")

            try:
                connected = self.supervisor.connect(server.id, failover=True)
            except TunnelManagerError as e:
                logger.info(f"[FAILOVER] Failed to connect to {server.name}: {e}. "
                            f"Adding to failed list and trying next server...")
                self.session.add(server.id)
                continue

            if not connected:
                logger.info("[FAILOVER] Connection established elsewhere, stopping")
                return FailoverOutcome(False, attempted=attempted, reason="superseded")

            # A disconnect queued behind this connect tears it down next
            if self._cancel.is_set():
                logger.info("[FAILOVER] Cancelled by user disconnect")
                return FailoverOutcome(False, server=server, attempted=attempted,
                                       reason="cancelled")

            logger.info(f"[FAILOVER] Successfully connected to {server.name}.")
            self.supervisor.notify_callbacks('auto_failover', True, server)
            return FailoverOutcome(True, server=server, attempted=attempted)

        return self._exhausted(
            "All failover attempts failed. Could not establish a new connection.",
            attempted
        )

    def _exhausted(self, message: str, attempted: List[str]) -> FailoverOutcome:
        error = FailoverExhausted(message, attempted)
        logger.error(f"[FAILOVER] {error}")
        self.supervisor.notify_callbacks('auto_failover', False, None)
        self.supervisor.notify_callbacks('connection_error', str(error))
        return FailoverOutcome(False, attempted=attempted, reason=str(error))
