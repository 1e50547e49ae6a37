"""Process-wide registries of in-flight agent calls and abort handles.

Both registries are ordinary objects.  The application builds one of each at
startup and passes them by reference to every component that needs them, so
sharing stays process-wide while tests can use fresh instances.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from uuid import uuid4

from agent_pilot.pilot.models import CallStatus
from agent_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 5.0
TASK_PREVIEW_CHARS = 200

TimerFactory = Callable[[float, Callable[[], None]], threading.Timer]


@dataclass(slots=True)
class CallRecord:
    """One tracked agent subprocess call.

    ``process`` is present exactly while ``status`` is ``running``.
    """

    call_id: str
    task: str
    workdir: str
    started_at: datetime
    status: CallStatus = CallStatus.RUNNING
    conversation_id: str | None = None
    conversation_title: str | None = None
    model: str | None = None
    process: subprocess.Popen[bytes] | None = None


def _daemon_timer(interval: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


class ActiveCallRegistry:
    """Tracks running and recently finished agent calls."""

    def __init__(
        self,
        *,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        timer_factory: TimerFactory = _daemon_timer,
    ) -> None:
        self.grace_seconds = grace_seconds
        self._timer_factory = timer_factory
        self._calls: dict[str, CallRecord] = {}
        self._evictions_scheduled: set[str] = set()
        self._lock = threading.Lock()

    def register(
        self,
        task: str,
        workdir: str,
        *,
        conversation_id: str | None = None,
        conversation_title: str | None = None,
        model: str | None = None,
    ) -> str:
        call_id = f"call_{uuid4().hex[:12]}"
        record = CallRecord(
            call_id=call_id,
            task=task[:TASK_PREVIEW_CHARS],
            workdir=workdir,
            started_at=utc_now(),
            conversation_id=conversation_id,
            conversation_title=conversation_title,
            model=model,
        )
        with self._lock:
            self._calls[call_id] = record
            running = self._running_count()
        logger.info(
            "Registered agent call: call_id=%s conversation_id=%s running=%d",
            call_id,
            conversation_id,
            running,
        )
        return call_id

    def attach_process(self, call_id: str, process: subprocess.Popen[bytes]) -> None:
        """Bind the live process to a running call.

        A call that was killed before its process got attached is no longer
        running; the late process is terminated right away.
        """

        with self._lock:
            record = self._calls.get(call_id)
            if record is not None and record.status is CallStatus.RUNNING:
                record.process = process
                return
        logger.warning("Agent call %s is not running; killing late process", call_id)
        kill_quietly(process)

    def complete(self, call_id: str, success: bool) -> None:
        """Mark a call terminal and schedule its eviction after the grace period."""

        with self._lock:
            record = self._calls.get(call_id)
            if record is None:
                logger.warning("Agent call not found on completion: call_id=%s", call_id)
                return
            if record.status is CallStatus.RUNNING:
                record.status = CallStatus.COMPLETED if success else CallStatus.ERROR
            record.process = None
            status = record.status
            schedule = call_id not in self._evictions_scheduled
            self._evictions_scheduled.add(call_id)
        logger.info("Completed agent call: call_id=%s status=%s", call_id, status.value)
        if schedule:
            self._schedule_eviction(call_id)

    def get(self, call_id: str) -> CallRecord | None:
        with self._lock:
            record = self._calls.get(call_id)
            return replace(record) if record is not None else None

    def list_running(self) -> list[CallRecord]:
        with self._lock:
            return [
                replace(record)
                for record in self._calls.values()
                if record.status is CallStatus.RUNNING
            ]

    def list_all(self) -> list[CallRecord]:
        with self._lock:
            return [replace(record) for record in self._calls.values()]

    def kill_by_correlation(self, conversation_id: str) -> int:
        """Terminate every running call of a conversation; return how many."""

        victims: list[tuple[str, subprocess.Popen[bytes] | None]] = []
        with self._lock:
            for record in self._calls.values():
                if record.conversation_id != conversation_id:
                    continue
                if record.status is not CallStatus.RUNNING:
                    continue
                record.status = CallStatus.ERROR
                victims.append((record.call_id, record.process))
                record.process = None

        killed = 0
        for call_id, process in victims:
            if process is None or kill_quietly(process):
                killed += 1
                logger.info(
                    "Killed agent call: conversation_id=%s call_id=%s",
                    conversation_id,
                    call_id,
                )
        return killed

    def _running_count(self) -> int:
        return sum(1 for record in self._calls.values() if record.status is CallStatus.RUNNING)

    def _schedule_eviction(self, call_id: str) -> None:
        timer = self._timer_factory(self.grace_seconds, lambda: self._evict(call_id))
        timer.start()

    def _evict(self, call_id: str) -> None:
        with self._lock:
            self._calls.pop(call_id, None)
            self._evictions_scheduled.discard(call_id)
        logger.debug("Evicted agent call: call_id=%s", call_id)


def kill_quietly(process: subprocess.Popen[bytes]) -> bool:
    try:
        process.kill()
    except OSError as error:
        logger.warning("Failed to kill agent process pid=%s: %s", process.pid, error)
        return False
    return True


class AbortHandle:
    """Cancellation token for one conversation run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def abort(self) -> None:
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()


class AbortRegistry:
    """Maps conversation ids to their current abort handle."""

    def __init__(self) -> None:
        self._handles: dict[str, AbortHandle] = {}
        self._lock = threading.Lock()

    def register(self, conversation_id: str, handle: AbortHandle) -> None:
        with self._lock:
            self._handles[conversation_id] = handle

    def get_signal(self, conversation_id: str) -> AbortHandle | None:
        with self._lock:
            return self._handles.get(conversation_id)

    def abort(self, conversation_id: str) -> bool:
        """Signal and drop the handle; ``False`` when none was registered."""

        with self._lock:
            handle = self._handles.pop(conversation_id, None)
        if handle is None:
            return False
        handle.abort()
        return True

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def has(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._handles

    def unregister(self, conversation_id: str, handle: AbortHandle | None = None) -> None:
        """Drop the handle; with ``handle`` given, only when it is still the current one."""

        with self._lock:
            current = self._handles.get(conversation_id)
            if current is None:
                return
            if handle is not None and current is not handle:
                return
            del self._handles[conversation_id]
