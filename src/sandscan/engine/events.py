# src/sandscan/engine/events.py
"""
EventBus: per-job fan-out of log, alert, progress and done events to live subscribers.
"""

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

EVENT_KINDS = ("log", "alert", "progress", "done")


@dataclass(frozen=True)
class Event:
    job_id: str
    kind: str
    data: Dict[str, Any]
    sequence: int

    def to_dict(self) -> dict:
        return {"job_id": self.job_id, "kind": self.kind, "sequence": self.sequence, "data": self.data}


@dataclass(eq=False)
class Subscription:
    job_id: Optional[str]
    queue: "queue.Queue[Event]" = field(default_factory=queue.Queue)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events

    def __iter__(self):
        # Job subscriptions end with the job's done event; firehose ones never end.
        while True:
            event = self.queue.get()
            yield event
            if self.job_id is not None and event.kind == "done":
                return


class EventBus:
    def __init__(self):
        self._subscribers: Dict[Optional[str], List[Subscription]] = {}
        self._sequences: Dict[str, itertools.count] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        """Subscribe to one job's events, or to every job when job_id is None."""
        sub = Subscription(job_id=job_id)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.job_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.job_id, None)

    def publish(self, job_id: str, kind: str, data: Dict[str, Any]) -> Event:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")
        with self._lock:
            counter = self._sequences.setdefault(job_id, itertools.count(1))
            event = Event(job_id=job_id, kind=kind, data=data, sequence=next(counter))
            targets = list(self._subscribers.get(job_id, [])) + list(self._subscribers.get(None, []))
            if kind == "done":
                self._sequences.pop(job_id, None)
            for sub in targets:
                sub.queue.put(event)
        logging.debug(f"[job_id={job_id}] Published {kind} event #{event.sequence} to {len(targets)} subscriber(s)")
        return event
