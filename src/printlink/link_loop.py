"""
Runs a link manager on a background thread, for applications that are not written with asyncio.
"""
import asyncio
import logging
import threading
from concurrent.futures import Future

from printlink.errors import LinkError
from printlink.link import LinkManager
from printlink.support.events import QueuedEventSource

logger = logging.getLogger(__name__)


class LinkManagerThread:
    """ Runs the manager's operations on an event loop owned by a daemon thread.
        Each operation returns a concurrent.futures.Future with the operation's result or error.

        Events fired by the manager are queued. Call publish() from the thread that owns the
        listeners to deliver them.
    """

    def __init__(self, manager: LinkManager, log=logger):
        """
        :param manager the link manager to run. It must not be in use on another event loop.
        """
        self.manager = manager
        self.events = QueuedEventSource(guarded=True, log=log)
        self.loop = None
        self.background_thread = None
        self.logger = log
        self._ready = threading.Event()

    def start(self):
        """
        Starts the background thread and its event loop, and waits until the loop is running.
        """
        if self.background_thread is None:
            self._ready.clear()
            t = threading.Thread(target=self._run, name='printlink-link', daemon=True)
            self.background_thread = t
            t.start()
            self._ready.wait()
        return self

    def _run(self):
        """ The processing loop for the background thread. """
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self.loop = loop
        self.manager.events += self.events.fire
        self.manager.start()
        loop.call_soon(self._ready.set)
        try:
            loop.run_forever()
        finally:
            self.manager.events -= self.events.fire
            loop.close()
            self.loop = None
        self.logger.info("link thread exiting")

    def running(self):
        return self.loop is not None and self.background_thread is not None

    def stop(self, timeout=None):
        """ shuts down the link manager, closing any connection, and stops the background thread. """
        thread = self.background_thread
        if not self.running():
            return
        try:
            self._submit(self.manager.shutdown()).result(timeout)
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self.background_thread = None
            if thread is not threading.current_thread():
                thread.join(timeout)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def _submit(self, coro) -> Future:
        if not self.running():
            coro.close()
            raise LinkError("the link thread is not running")
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def _call(self, fn, *args) -> Future:
        """ calls a plain function on the loop thread """
        if not self.running():
            raise LinkError("the link thread is not running")
        future = Future()

        def call():
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        self.loop.call_soon_threadsafe(call)
        return future

    def start_discovery(self, name_filter=None, scan_duration_ms=None) -> Future:
        """
        Discovers printers. The future completes with the DiscoveryOutcome when discovery ends,
        candidates are also reported in the LinkStatus events as they are found.
        """
        async def discover():
            subscription = await self.manager.start_discovery(name_filter, scan_duration_ms)
            return await subscription.wait()
        return self._submit(discover())

    def stop_discovery(self) -> Future:
        return self._submit(self.manager.stop_discovery())

    def connect(self, target) -> Future:
        return self._submit(self.manager.connect(target))

    def submit_print_job(self, content) -> Future:
        return self._submit(self.manager.submit_print_job(content))

    def disconnect(self) -> Future:
        return self._submit(self.manager.disconnect())

    def cancel(self) -> Future:
        return self._submit(self.manager.cancel())

    def current_status(self, timeout=None):
        return self._call(self.manager.current_status).result(timeout)

    def publish(self):
        """ delivers the queued events to listeners on the calling thread. """
        return self.events.publish()
