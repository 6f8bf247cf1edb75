"""
Progress fan-out to connected observers.

Every subscriber owns a small bounded queue. publish() never blocks: when a
slow observer's queue is full its oldest event is dropped, which is safe
because a later event for the same job always supersedes an earlier one.
"""
import logging
import queue
import threading
from typing import Dict, Optional

DEFAULT_QUEUE_SIZE = 100


class Subscription:
    def __init__(self, broadcaster, job_id: Optional[str] = None, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.broadcaster = broadcaster
        self.job_id = job_id
        self.queue: 'queue.Queue[dict]' = queue.Queue(maxsize=maxsize)
        self.closed = False

    def wants(self, event: dict) -> bool:
        return self.job_id is None or event.get('id') == self.job_id

    def offer(self, event: dict):
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self.queue.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[dict]:
        """Next event, or None if nothing arrived within timeout."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        if not self.closed:
            self.closed = True
            self.broadcaster.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ProgressBroadcaster:
    """
    Publish/subscribe channel for job events.

    subscribe() with no job id receives every job's events; with a job id,
    only that job's.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[int, Subscription] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, job_id, self.queue_size)
        with self._lock:
            self._subscribers[id(subscription)] = subscription
        logging.info(f"Progress observer connected ({'job ' + job_id if job_id else 'all jobs'})")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            self._subscribers.pop(id(subscription), None)
        logging.info('Progress observer disconnected')

    def publish(self, event: dict):
        with self._lock:
            targets = [s for s in self._subscribers.values() if s.wants(event)]
        for subscription in targets:
            subscription.offer(event)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
