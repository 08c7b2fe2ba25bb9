"""Worker supervision: poll for assigned tasks, run one session at a time, report the outcome."""

import logging
import os
import threading
import time
from collections.abc import Callable

from operator_hub.config import MAX_SESSION_TIMEOUT, Config
from operator_hub.core.client import ApiRejectedError, TransientApiError
from operator_hub.core.retry import RetryPolicy
from operator_hub.core.router import TaskConflictError
from operator_hub.core.sessions import SessionBackend, SessionSpawnError, build_task_prompt
from operator_hub.core.tasks import priority_rank
from operator_hub.db.engine import JsonStore
from operator_hub.db.models import Task, WorkerHeartbeat, utcnow

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# Applied when the backend no longer knows a session: the task is reported completed.
MISSING_SESSION_FALLBACK = "assume-completed"

MAX_POLL_BACKOFF = 5 * 60.0


class WorkerSupervisor:
    """Runs tasks assigned to one worker slot.

    Two threads: the poll thread picks up work and monitors the running
    session; the heartbeat thread writes liveness records. Only one session
    runs at a time.
    """

    def __init__(
        self,
        slot: str,
        api,
        backend: SessionBackend,
        heartbeats: JsonStore,
        config: Config | None = None,
        retry: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.slot = slot
        self.api = api
        self.backend = backend
        self.heartbeats = heartbeats
        self.config = config or Config()
        self.retry = retry or RetryPolicy()
        self.clock = clock

        self.status = "idle"
        self.current_task: Task | None = None
        self.session_id: str | None = None
        self.started_at = utcnow()
        self.poll_delay = self.config.task_poll_interval
        self._session_started: float | None = None
        self._session_timeout: float = self.config.session_timeout

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self):
        """Start the poll and heartbeat threads."""
        if any(t.is_alive() for t in self._threads):
            return
        self._stop_event.clear()
        self.status = "idle"
        self.beat()
        self._threads = [
            threading.Thread(target=self._run, name=f"worker-{self.slot}", daemon=True),
            threading.Thread(target=self._beat, name=f"heartbeat-{self.slot}", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("[%s] Worker started", self.slot)

    def stop(self):
        """Stop both threads and record the worker as stopped.

        A session still running is left alone; its task stays claimed until
        the orphan sweep releases it.
        """
        self._stop_event.set()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=10)
        self._threads = []
        if self.current_task is not None:
            logger.warning(
                "[%s] Stopping with task %s in flight (session %s)",
                self.slot, self.current_task.id, self.session_id,
            )
        with self._lock:
            self.status = "stopped"
        self.write_heartbeat()
        logger.info("[%s] Worker stopped", self.slot)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop() is called. Returns True once stopped."""
        return self._stop_event.wait(timeout)

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set() and any(t.is_alive() for t in self._threads)

    def _run(self):
        """Poll thread loop."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("[%s] Error in worker loop", self.slot)
            self._stop_event.wait(self.next_delay())

    def _beat(self):
        """Heartbeat thread loop."""
        while not self._stop_event.wait(self.config.heartbeat_interval):
            try:
                self.beat()
            except OSError:
                logger.exception("[%s] Failed to write heartbeat", self.slot)

    def tick(self):
        """One step of the poll thread: look for work when idle, otherwise check the session."""
        if self.current_task is None:
            self.poll_tasks()
        else:
            self.monitor_session()

    def next_delay(self) -> float:
        if self.current_task is not None:
            return self.config.session_poll_interval
        return self.poll_delay

    # ── Heartbeat ────────────────────────────────────────────────────────────

    def heartbeat_record(self) -> WorkerHeartbeat:
        with self._lock:
            task = self.current_task
            return WorkerHeartbeat(
                slot=self.slot,
                status=self.status,
                task=task.id if task else None,
                task_title=task.title if task else None,
                session_id=self.session_id,
                last_beat_at=utcnow(),
                started_at=self.started_at,
                pid=os.getpid(),
                version=VERSION,
            )

    def write_heartbeat(self):
        record = self.heartbeat_record().to_dict()
        with self.heartbeats.transaction() as records:
            records[:] = [r for r in records if r.get("slot") != self.slot]
            records.append(record)

    def beat(self):
        """Write the worker heartbeat and keep the slot's agent registration fresh."""
        self.write_heartbeat()
        try:
            self.api.heartbeat(self.slot)
        except LookupError:
            logger.debug("[%s] No agent registered for this slot", self.slot)
        except (TransientApiError, ApiRejectedError) as e:
            logger.warning("[%s] Agent heartbeat failed: %s", self.slot, e)

    # ── Polling ──────────────────────────────────────────────────────────────

    def _candidates(self) -> list[Task]:
        queued = self.api.list_tasks(lane="queued", assigned_to=self.slot)
        claimed = [
            t for t in self.api.list_tasks(lane="development", assigned_to=self.slot)
            if t.claimed_by == self.slot
        ]
        candidates = queued + claimed
        candidates.sort(
            key=lambda t: (priority_rank(t.priority), t.created_at.isoformat() if t.created_at else "")
        )
        return candidates

    def poll_tasks(self) -> Task | None:
        """Pick up the next task for this slot and start it. Returns the task started, if any."""
        if self.current_task is not None:
            return None

        try:
            candidates = self._candidates()
        except (TransientApiError, ApiRejectedError, OSError) as e:
            self.poll_delay = min(self.poll_delay * 2, MAX_POLL_BACKOFF)
            logger.warning("[%s] Task poll failed: %s; next poll in %.0fs", self.slot, e, self.poll_delay)
            return None
        self.poll_delay = self.config.task_poll_interval

        for task in candidates:
            if task.lane == "development":
                logger.info("[%s] Resuming claimed task %s", self.slot, task.id)
            else:
                try:
                    task = self.api.claim(task.id, self.slot)
                except TaskConflictError as e:
                    logger.info(
                        "[%s] Task %s taken (lane=%s, agent=%s); trying next",
                        self.slot, task.id, e.current_lane, e.current_agent,
                    )
                    continue
                except ApiRejectedError as e:
                    logger.warning("[%s] Claim of %s rejected: %s", self.slot, task.id, e)
                    continue
            self.execute_task(task)
            return task
        return None

    # ── Execution ────────────────────────────────────────────────────────────

    def execute_task(self, task: Task):
        """Mark the worker busy with a task and start its session."""
        if self.session_id is not None:
            raise RuntimeError(f"Worker {self.slot} already has session {self.session_id}")

        with self._lock:
            self.current_task = task
            self.status = "working"
        logger.info("[%s] Executing task %s: %s", self.slot, task.id, task.title)
        self.write_heartbeat()

        try:
            session_id = self.spawn_session(task)
        except SessionSpawnError as e:
            logger.error("[%s] Session spawn failed for %s: %s", self.slot, task.id, e)
            self.complete_task(task, success=False, error=f"Session spawn failed: {e}")
            return

        with self._lock:
            self.session_id = session_id
        self._session_started = self.clock()
        self._session_timeout = min(task.timeout_seconds or self.config.session_timeout, MAX_SESSION_TIMEOUT)
        logger.info(
            "[%s] Monitoring session %s (timeout %.0fs)", self.slot, session_id, self._session_timeout
        )
        self.write_heartbeat()

    def spawn_session(self, task: Task) -> str:
        prompt = build_task_prompt(self.slot, task)
        return self.backend.spawn(self.slot, task, prompt)

    def monitor_session(self) -> bool:
        """Check the running session once. Returns True when the task was finished."""
        task, session_id = self.current_task, self.session_id
        if task is None or session_id is None:
            return False
        self.write_heartbeat()

        status = self.backend.status(session_id)
        if status is None:
            logger.warning(
                "[%s] Session %s not found; applying %s fallback",
                self.slot, session_id, MISSING_SESSION_FALLBACK,
            )
            self.complete_task(task, success=True)
            return True
        if status.state == "completed":
            logger.info("[%s] Session %s completed", self.slot, session_id)
            self.complete_task(task, success=True)
            return True
        if status.state == "failed":
            logger.error("[%s] Session %s failed: %s", self.slot, session_id, status.error)
            self.complete_task(task, success=False, error=status.error or "Session failed")
            return True

        # Timeout only applies to a session that is still running
        started = self._session_started if self._session_started is not None else self.clock()
        elapsed = self.clock() - started
        if elapsed > self._session_timeout:
            logger.error(
                "[%s] Session timeout exceeded (%.0fs > %.0fs)", self.slot, elapsed, self._session_timeout
            )
            self.backend.kill(session_id)
            self.complete_task(task, success=False, error="Session timeout exceeded")
            return True

        logger.info("[%s] Session still running (elapsed: %.0fs)", self.slot, elapsed)
        return False

    def complete_task(self, task: Task, success: bool, error: str | None = None):
        """Report the outcome through the task API, then go back to idle whatever happens."""
        lane = "review" if success else "blocked"
        session_id = self.session_id
        logger.info(
            "[%s] Completing task %s: %s (lane: %s)",
            self.slot, task.id, "SUCCESS" if success else "FAILED", lane,
        )

        def report():
            if success:
                return self.api.complete(task.id, agent_id=self.slot, session_id=session_id)
            return self.api.blocked(task.id, agent_id=self.slot, reason=error, session_id=session_id)

        try:
            self.retry.call(report, retry_on=(TransientApiError,), label=f"[{self.slot}] update {task.id}")
        except (TransientApiError, ApiRejectedError, LookupError) as e:
            logger.error("[%s] Could not move task %s to %s: %s", self.slot, task.id, lane, e)
        finally:
            with self._lock:
                self.current_task = None
                self.session_id = None
                self.status = "idle"
            self._session_started = None
            self.write_heartbeat()


def list_heartbeats(store: JsonStore) -> list[WorkerHeartbeat]:
    """All worker heartbeat records, sorted by slot."""
    beats = []
    for record in store.load():
        try:
            beats.append(WorkerHeartbeat.from_dict(record))
        except ValueError as e:
            logger.warning("Skipping malformed heartbeat record: %s", e)
    beats.sort(key=lambda b: b.slot)
    return beats
