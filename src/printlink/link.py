"""
The link manager drives one printer link through discovery, connection, sending and teardown.

    IDLE | CANDIDATES_FOUND --start_discovery--> DISCOVERING --scan ends--> CANDIDATES_FOUND | IDLE
    IDLE | DISCOVERING | CANDIDATES_FOUND --connect--> CONNECTING --opened--> CONNECTED
    CONNECTED --submit_print_job--> SENDING --sent--> CONNECTED
    CONNECTED --disconnect--> DISCONNECTING --closed--> IDLE
    CONNECTING | SENDING --failed--> ERROR --> IDLE
    any --cancel--> IDLE

ERROR is passed through on the way back to IDLE, after the transport has been closed, so listeners see
each failure. The failure itself is raised to the caller of the failed operation and kept as last_error.

The manager is not reentrant. An operation that conflicts with the one in progress fails immediately
with BusyError and leaves the operation in progress alone.
"""
import asyncio
import inspect
import logging
import time
from enum import Enum

from printlink.config.config import LinkConfig
from printlink.discovery import as_filter
from printlink.errors import BusyError, ConnectError, ConnectIoError, ConnectTimeoutError, DisconnectError, \
    DiscoveryError, DiscoveryPermissionError, LinkError, LinkLostError, NotConnectedError, OperationCancelledError, \
    SendError, SendIoError, SendTimeoutError
from printlink.protocol.encoder import CommandEncoder, PrintJob
from printlink.support.events import EventSource
from printlink.transport.base import ClosedEvent

logger = logging.getLogger(__name__)


class LinkState(Enum):
    IDLE = 'idle'
    DISCOVERING = 'discovering'
    CANDIDATES_FOUND = 'candidates_found'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    SENDING = 'sending'
    DISCONNECTING = 'disconnecting'
    ERROR = 'error'


# the states in which the link holds an open handle
SESSION_STATES = frozenset((LinkState.CONNECTED, LinkState.SENDING, LinkState.DISCONNECTING))


class LinkStatus:
    """ A snapshot of the link, fired to listeners on every change. """

    __slots__ = ('state', 'connected_target', 'last_error', 'candidates')

    def __init__(self, state, connected_target=None, last_error=None, candidates=()):
        self.state = state
        self.connected_target = connected_target
        self.last_error = last_error
        self.candidates = tuple(candidates)

    def __eq__(self, other):
        return isinstance(other, LinkStatus) and all(getattr(self, a) == getattr(other, a) for a in self.__slots__)

    def __repr__(self):
        return 'LinkStatus(%s, target=%r, error=%r, candidates=%d)' % (
            self.state.value, self.connected_target, self.last_error, len(self.candidates))


class LinkSession:
    """ the lifetime of one connection, from connect() until it is closed """

    def __init__(self, transport_kind, target):
        self.transport_kind = transport_kind
        self.target = target
        self.state = LinkState.CONNECTING
        self.created_at = time.time()
        self.last_error = None

    def __repr__(self):
        return 'LinkSession(%r, %s)' % (self.target, self.state.value)


class DiscoveryOutcome:
    """
    How a discovery ended.
    :param reason: one of timeout (the scan budget elapsed), stopped (stop_discovery() or connect()),
        completed (the transport finished scanning), cancelled or failed.
    :param candidates: the candidates found
    :param error: the error that ended the scan, when the reason is failed
    """
    TIMEOUT = 'timeout'
    STOPPED = 'stopped'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    FAILED = 'failed'

    def __init__(self, reason, candidates=(), error=None):
        self.reason = reason
        self.candidates = tuple(candidates)
        self.error = error

    def __repr__(self):
        return 'DiscoveryOutcome(%s, %d candidates)' % (self.reason, len(self.candidates))


class DiscoverySubscription:
    """
    The candidates found by one discovery, as an async iterator that ends when the discovery ends.
    wait() returns the DiscoveryOutcome.
    """

    def __init__(self):
        self._queue = asyncio.Queue()
        self._outcome = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._outcome.done()

    @property
    def outcome(self) -> DiscoveryOutcome:
        """ the outcome, or None while discovery is running """
        return self._outcome.result() if self._outcome.done() else None

    def _found(self, candidate):
        self._queue.put_nowait(candidate)

    def _finish(self, outcome):
        if not self._outcome.done():
            self._outcome.set_result(outcome)
            self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        candidate = await self._queue.get()
        if candidate is None:
            self._queue.put_nowait(None)
            outcome = self._outcome.result()
            if outcome.error is not None:
                raise outcome.error
            raise StopAsyncIteration
        return candidate

    async def wait(self) -> DiscoveryOutcome:
        """ waits for discovery to end. Raises the error when discovery failed. """
        outcome = await asyncio.shield(self._outcome)
        if outcome.error is not None:
            raise outcome.error
        return outcome


class LinkManager:
    """
    Supervises the link to one printer over the given transport.

    :param transport: the Transport used to discover, connect and send
    :param config: the LinkConfig with the time budgets and the target printer name
    :param discovery_filter: a DiscoveryFilter or printer name applied to discovered printers.
        Defaults to the configured target name.
    :param permission_check: called before each discovery. It may be a coroutine function.
        Discovery fails with DiscoveryPermissionError when it returns a false value or raises.
    :param encoder: the CommandEncoder for print content. Defaults to the configured charset.

    Listeners added to events receive a LinkStatus on each state change, and the TransportEvents
    fired by the transport while the manager is started.
    """

    def __init__(self, transport, config: LinkConfig=None, discovery_filter=None, permission_check=None,
                 encoder: CommandEncoder=None, log=logger):
        self.transport = transport
        self.config = config or LinkConfig()
        self.discovery_filter = as_filter(discovery_filter if discovery_filter is not None
                                          else self.config.target_name)
        self.permission_check = permission_check
        self.encoder = encoder or CommandEncoder(self.config.charset)
        self.events = EventSource(guarded=True, log=log)
        self.logger = log
        self._state = LinkState.IDLE
        self._session = None
        self._handle = None
        self._last_error = None
        self._candidates = []
        self._discovery = None      # the task running the scan
        self._subscription = None
        self._stop_requested = False
        self._operation = None      # the task connecting or sending
        self._cancelled = set()     # operations cancelled by cancel()
        self._closing = None        # the task closing the session, shared by concurrent disconnect() calls
        self._started = False

    def start(self):
        if not self._started:
            self.transport.events += self._transport_event
            self._started = True
        return self

    async def shutdown(self):
        """ cancels any operation in progress, closes the connection and stops listening to the transport. """
        if self._started:
            await self.cancel()
            self.transport.events -= self._transport_event
            self._started = False

    async def __aenter__(self):
        return self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def candidates(self):
        return tuple(self._candidates)

    @property
    def session(self) -> LinkSession:
        return self._session

    @property
    def last_error(self) -> LinkError:
        return self._last_error

    def current_status(self) -> LinkStatus:
        target = self._session.target if self._session is not None and self._state in SESSION_STATES else None
        return LinkStatus(self._state, target, self._last_error, self._candidates)

    def _set_state(self, state):
        self._state = state
        if self._session is not None:
            self._session.state = state
        self.logger.debug("link state %s" % state.value)
        self._fire_status()

    def _fire_status(self):
        self.events.fire(self.current_status())

    def _check_started(self):
        if not self._started:
            raise LinkError("the link manager has not been started")

    def _check_available(self, operation):
        if self._state not in (LinkState.IDLE, LinkState.CANDIDATES_FOUND, LinkState.ERROR):
            raise BusyError("cannot %s while %s" % (operation, self._state.value))

    async def start_discovery(self, name_filter=None, scan_duration_ms=None) -> DiscoverySubscription:
        """
        Starts scanning for printers. Scanning stops after scan_duration_ms, or the configured scan duration.
        :param name_filter: a printer name or DiscoveryFilter, replacing the manager's filter for this scan
        :return: a subscription to the candidates found
        """
        self._check_started()
        self._check_available('start discovery')
        discovery_filter = self.discovery_filter if name_filter is None else as_filter(name_filter)
        config = self.config if scan_duration_ms is None else self.config.replace(scan_duration_ms=scan_duration_ms)
        previous = self._state
        self._set_state(LinkState.DISCOVERING)
        try:
            await self._check_permission()
        except DiscoveryPermissionError as e:
            self.logger.warning("discovery not permitted: %s" % e)
            self._last_error = e
            if self._state is LinkState.DISCOVERING:
                self._set_state(previous)
            raise
        if self._state is not LinkState.DISCOVERING:
            raise OperationCancelledError("discovery was cancelled")

        self._candidates = []
        self._stop_requested = False
        subscription = self._subscription = DiscoverySubscription()
        self._discovery = asyncio.ensure_future(self._discover(subscription, discovery_filter, config.scan_duration))
        self.logger.info("discovering %s for %d ms" % (discovery_filter.name or "printers", config.scan_duration_ms))
        self._fire_status()
        return subscription

    async def _check_permission(self):
        check = self.permission_check
        if check is None:
            return
        try:
            granted = check()
            if inspect.isawaitable(granted):
                granted = await granted
        except DiscoveryPermissionError:
            raise
        except Exception as e:
            raise DiscoveryPermissionError("permission check failed: %s" % e) from e
        if not granted:
            raise DiscoveryPermissionError

    async def _discover(self, subscription, discovery_filter, duration):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        scan = self.transport.discover(discovery_filter.name, duration)
        reason, error = DiscoveryOutcome.COMPLETED, None
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    reason = DiscoveryOutcome.TIMEOUT
                    break
                try:
                    candidate = await asyncio.wait_for(scan.__anext__(), remaining)
                except StopAsyncIteration:
                    reason = DiscoveryOutcome.STOPPED if self._stop_requested else DiscoveryOutcome.COMPLETED
                    break
                except asyncio.TimeoutError:
                    reason = DiscoveryOutcome.TIMEOUT
                    break
                if discovery_filter.matches(candidate) and candidate not in self._candidates:
                    self.logger.info("found %s (%s)" % (candidate.display_name, candidate.id))
                    self._candidates.append(candidate)
                    subscription._found(candidate)
                    self._fire_status()
        except asyncio.CancelledError:
            reason = DiscoveryOutcome.STOPPED if self._stop_requested else DiscoveryOutcome.CANCELLED
            raise
        except LinkError as e:
            reason, error = DiscoveryOutcome.FAILED, e
        except Exception as e:
            self.logger.exception("discovery failed")
            reason, error = DiscoveryOutcome.FAILED, DiscoveryError("discovery failed: %s" % e)
            error.__cause__ = e
        finally:
            await scan.aclose()
            self._discovery_ended(subscription, reason, error)

    def _discovery_ended(self, subscription, reason, error):
        self._discovery = None
        outcome = DiscoveryOutcome(reason, self._candidates, error)
        self.logger.info("discovery ended (%s), %d candidates" % (reason, len(self._candidates)))
        # connect() and cancel() take over the state themselves
        if self._state is LinkState.DISCOVERING:
            if error is not None:
                self._report(error)
            elif reason == DiscoveryOutcome.CANCELLED or not self._candidates:
                self._set_state(LinkState.IDLE)
            else:
                self._set_state(LinkState.CANDIDATES_FOUND)
        subscription._finish(outcome)

    async def stop_discovery(self) -> DiscoveryOutcome:
        """ stops a running discovery. The candidates found so far remain listed. """
        subscription = self._subscription
        await self._stop_scan()
        return subscription.outcome if subscription is not None else None

    async def _stop_scan(self):
        if self._discovery is None:
            return
        self._stop_requested = True
        await self.transport.stop_discovery()
        await self._end_scan(DiscoveryOutcome.STOPPED)

    async def _end_scan(self, reason):
        task, subscription = self._discovery, self._subscription
        if task is None:
            return
        task.cancel()
        await asyncio.wait({task})
        if not subscription.done:
            # cancelled before the scan started
            self._discovery_ended(subscription, reason, None)

    async def connect(self, target):
        """
        Connects to a candidate, or to an address the transport understands. A running discovery is stopped
        first. Raises ConnectError when the printer cannot be reached within the connect timeout.
        """
        self._check_started()
        if self._state in (LinkState.CONNECTING, LinkState.CONNECTED, LinkState.SENDING, LinkState.DISCONNECTING):
            raise BusyError("cannot connect while %s" % self._state.value)
        resolved = self.transport.resolve_target(target)
        self._session = LinkSession(self.transport.kind, resolved)
        self._set_state(LinkState.CONNECTING)
        await self._stop_scan()
        if self._state is not LinkState.CONNECTING:
            raise OperationCancelledError("connect was cancelled")
        await self._run(self._connect(resolved))

    async def _connect(self, target):
        self.logger.info("connecting to %s" % (target,))
        try:
            handle = await asyncio.wait_for(self.transport.open(target), self.config.connect_timeout)
        except asyncio.TimeoutError as e:
            error = ConnectTimeoutError("no connection to %s within %d ms" % (target, self.config.connect_timeout_ms))
            await self._fail(error)
            raise error from e
        except ConnectError as e:
            await self._fail(e)
            raise
        except (asyncio.CancelledError, OperationCancelledError):
            await self._abort()
            raise
        except Exception as e:
            error = ConnectIoError("cannot connect to %s: %s" % (target, e))
            await self._fail(error)
            raise error from e
        self._handle = handle
        self._set_state(LinkState.CONNECTED)
        self.logger.info("connected to %s" % (target,))

    async def submit_print_job(self, content) -> int:
        """
        Encodes and sends content to the connected printer.
        :param content: text, an iterable of lines, or a PrintJob
        :return: the number of bytes sent
        """
        self._check_started()
        if self._state is LinkState.SENDING:
            raise BusyError("a print job is already being sent")
        if self._state is not LinkState.CONNECTED:
            raise NotConnectedError
        job = content if isinstance(content, PrintJob) else PrintJob.from_content(content, self.encoder)
        self._set_state(LinkState.SENDING)
        return await self._run(self._send(job))

    async def _send(self, job: PrintJob):
        handle = self._handle
        try:
            count = await asyncio.wait_for(self.transport.send(handle, job.payload), self.config.send_timeout)
        except asyncio.TimeoutError as e:
            error = SendTimeoutError("printer did not accept %d bytes within %d ms"
                                     % (job.size_bytes, self.config.send_timeout_ms))
            await self._fail(error)
            raise error from e
        except SendError as e:
            await self._fail(e)
            raise
        except asyncio.CancelledError:
            await self._abort()
            raise
        except Exception as e:
            error = SendIoError("send failed: %s" % e)
            await self._fail(error)
            raise error from e
        self.logger.debug("sent %d bytes to %s" % (count, handle.target))
        if handle.closed:
            # the printer went away as the job completed
            await self._fail(LinkLostError("%s closed the connection" % (handle.target,)))
        else:
            self._set_state(LinkState.CONNECTED)
        return count

    async def _run(self, coro):
        operation = self._operation = asyncio.ensure_future(coro)
        try:
            return await operation
        except asyncio.CancelledError:
            if operation in self._cancelled:
                raise OperationCancelledError from None
            raise
        finally:
            self._cancelled.discard(operation)
            if self._operation is operation:
                self._operation = None

    async def disconnect(self):
        """
        Closes the connection. Calls made while the connection is closing wait for the same close.
        Does nothing when not connected.
        """
        if self._state in (LinkState.CONNECTING, LinkState.SENDING):
            raise BusyError("cannot disconnect while %s, cancel() instead" % self._state.value)
        if self._state is LinkState.DISCONNECTING:
            await asyncio.shield(self._closing)
            return
        if self._state is not LinkState.CONNECTED:
            if self._state is LinkState.ERROR:
                self._set_state(LinkState.IDLE)
            return
        self._set_state(LinkState.DISCONNECTING)
        self._closing = asyncio.ensure_future(self._disconnect())
        await asyncio.shield(self._closing)

    async def _disconnect(self):
        handle = self._handle
        try:
            await self.transport.close(handle)
        except DisconnectError as e:
            self._last_error = e
            raise
        finally:
            self._handle = None
            self._session = None
            self._closing = None
            self._set_state(LinkState.IDLE)
            self.logger.info("disconnected from %s" % (handle.target,))

    async def cancel(self):
        """
        Cancels discovery and any connect or send in progress, whose caller receives OperationCancelledError,
        and closes the connection. The link ends IDLE.
        """
        operation, closing = self._operation, self._closing
        await self._end_scan(DiscoveryOutcome.CANCELLED)
        if operation is not None and not operation.done():
            self.logger.info("cancelling %s" % self._state.value)
            self._last_error = OperationCancelledError()
            self._cancelled.add(operation)
            operation.cancel()
            await asyncio.wait({operation})
        if closing is not None:
            await asyncio.wait({closing})
        if self._handle is not None or self._state in (LinkState.CONNECTING, LinkState.SENDING):
            await self._release()
        self._session = None
        if self._state is not LinkState.IDLE:
            self._set_state(LinkState.IDLE)

    async def _release(self):
        """ closes the handle, or when there is none, anything a pending open created. """
        try:
            await self.transport.close(self._handle)
        except DisconnectError as e:
            self.logger.warning("error releasing the connection: %s" % e)
        finally:
            self._handle = None

    async def _fail(self, error):
        self.logger.warning("%s failed: %s" % (self._state.value, error))
        await self._release()
        self._report(error)

    async def _abort(self):
        await self._release()
        self._session = None
        self._set_state(LinkState.IDLE)

    def _report(self, error):
        self._last_error = error
        if self._session is not None:
            self._session.last_error = error
        self._set_state(LinkState.ERROR)
        self._session = None
        self._set_state(LinkState.IDLE)

    def _transport_event(self, event):
        self.events.fire(event)
        if isinstance(event, ClosedEvent) and event.reason == 'lost' \
                and event.handle is self._handle and self._state is LinkState.CONNECTED:
            self.logger.warning("lost connection to %s" % (event.handle.target,))
            self._handle = None
            self._report(LinkLostError("%s closed the connection" % (event.handle.target,)))
