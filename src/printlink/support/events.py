import logging
from queue import Queue, Empty

logger = logging.getLogger(__name__)


class EventSource(object):
    """
    Calls each registered handler with the events fired, in the order they were fired.

    :param guarded  when True, an exception raised by a handler is logged and the
        remaining handlers still receive the event. The link manager fires events in the middle of
        state transitions, so a misbehaving listener must not abort the transition.
    """

    def __init__(self, guarded=False, log=logger):
        self._handlers = []
        self.guarded = guarded
        self.logger = log

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def add(self, handler):
        self._handlers.append(handler)
        return self

    def remove(self, handler):
        if handler in self._handlers:
            self._handlers.remove(handler)
        return self

    def handlers(self):
        return tuple(self._handlers)

    def fire(self, *args, **kwargs):
        self._fire(*args, **kwargs)

    def fire_all(self, events):
        self._fire_all(events)

    def _fire_all(self, events):
        for e in events:
            self._fire(e)

    def _fire(self, *args, **kwargs):
        for handler in self.handlers():
            if not self.guarded:
                handler(*args, **kwargs)
                continue
            try:
                handler(*args, **kwargs)
            except Exception as e:
                self.logger.exception("event handler %s failed: %s" % (handler, e))


class QueuedEventSource(EventSource):
    """
    the public fire() methods post events to the queue. These are fired when a thread
    calls publish(). This moves events raised on the link's background thread
    onto the thread that owns the handlers.
    """
    def __init__(self, guarded=False, log=logger):
        super().__init__(guarded, log)
        self.event_queue = Queue()

    def fire(self, event):
        self.event_queue.put(event)

    def fire_all(self, events):
        for e in events:
            self.event_queue.put(e)

    def publish(self):
        """ publishes any queued events on the calling thread.
        :return: the number of events published
        """
        events = []
        while True:
            try:
                events.append(self.event_queue.get_nowait())
            except Empty:
                break
        self._fire_all(events)
        return len(events)
