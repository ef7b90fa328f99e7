import asyncio
import logging
from abc import abstractmethod
from enum import Enum

from printlink.errors import ConnectError, DisconnectError, NotConnectedError, SendError
from printlink.support.events import EventSource

logger = logging.getLogger(__name__)


class TransportKind(Enum):
    PERIPHERAL = 'peripheral'
    SOCKET = 'socket'


class PrinterCandidate:
    """
    A printer found by discovery, not yet connected to. Candidates are equal when their ids are equal,
    so repeated advertisements from the same printer describe the same candidate.
    """

    __slots__ = ('_id', '_display_name', '_transport_kind')

    def __init__(self, id, display_name, transport_kind: TransportKind):
        self._id = id
        self._display_name = display_name
        self._transport_kind = transport_kind

    @property
    def id(self):
        """ the transport specific identifier, such as a bluetooth address or host:port """
        return self._id

    @property
    def display_name(self) -> str:
        return self._display_name

    @property
    def transport_kind(self) -> TransportKind:
        return self._transport_kind

    def __eq__(self, other):
        return isinstance(other, PrinterCandidate) and other._id == self._id

    def __hash__(self):
        return hash(self._id)

    def __repr__(self):
        return 'PrinterCandidate(%r, %r, %s)' % (self._id, self._display_name, self._transport_kind.value)


class TransportEvent:
    """ base class for transport events. """
    def __init__(self, transport):
        self.transport = transport


class DiscoveredEvent(TransportEvent):
    """ A candidate printer was discovered. """
    def __init__(self, transport, candidate: PrinterCandidate):
        super().__init__(transport)
        self.candidate = candidate


class ConnectedEvent(TransportEvent):
    """ A handle to the printer was opened. """
    def __init__(self, transport, handle):
        super().__init__(transport)
        self.handle = handle


class BytesSentEvent(TransportEvent):
    """ Bytes were written to the printer. """
    def __init__(self, transport, handle, count):
        super().__init__(transport)
        self.handle = handle
        self.count = count


class ErrorEvent(TransportEvent):
    """ An operation on the transport failed. The kind is the error's kind tag. """
    def __init__(self, transport, kind, message):
        super().__init__(transport)
        self.kind = kind
        self.message = message


class ClosedEvent(TransportEvent):
    """
    The handle was closed. The reason is 'closed' when the handle was closed by the caller,
    'lost' when the printer or the link closed it.
    """
    def __init__(self, transport, handle, reason):
        super().__init__(transport)
        self.handle = handle
        self.reason = reason


class TransportHandle:
    """
    An open connection to a printer. The handle owns the native resource (socket streams, bluetooth client)
    and releases it when closed. Closing is idempotent.
    """

    def __init__(self, target):
        self.target = target
        self._closed = False
        self.on_lost = None     # callable, invoked when the connection drops without close()

    @property
    def open(self) -> bool:
        """ determines if this handle can be written to. """
        return not self._closed and self._connected()

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> bool:
        """
        Releases the native resource.
        :return: True if this call closed the handle, False if it was already closed.
        """
        if self._closed:
            return False
        self._closed = True
        await self._release()
        return True

    def _lost(self):
        """ called by subclasses when the native connection drops by itself. """
        if not self._closed and self.on_lost:
            self.on_lost(self)

    @abstractmethod
    def _connected(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def _release(self):
        raise NotImplementedError


class Transport:
    """
    A transport discovers printers, opens handles to them and writes bytes.

    The public methods are template methods that fire the TransportEvent corresponding to each
    outcome, subclasses implement _scan, _open, _send and resolve_target.

    A transport keeps track of the handles it has created and not yet closed.
    close(None) releases all of them, including one created by an open() that failed or was cancelled.
    """

    kind = None

    def __init__(self, log=logger):
        self.events = EventSource(guarded=True)
        self.logger = log
        self._live = []
        self._closing = set()   # tasks releasing lost connections

    @property
    def handles(self):
        """ the handles created and not yet closed """
        return tuple(self._live)

    async def discover(self, name_filter=None, duration=None):
        """
        Scans for printers, yielding each candidate as it is found.
        :param name_filter: when given, only printers advertising exactly this name are yielded.
        :param duration: the scan duration in seconds, or None to scan until stop_discovery()
        """
        async for candidate in self._scan(name_filter, duration):
            self.events.fire(DiscoveredEvent(self, candidate))
            yield candidate

    async def stop_discovery(self):
        """ ends a running scan early. Safe to call when no scan is running. """

    @abstractmethod
    def resolve_target(self, target):
        """
        Converts a candidate or an address into the target that open() expects.
        Raises ConfigurationError when the address is malformed.
        """
        raise NotImplementedError

    async def open(self, target) -> TransportHandle:
        """
        Opens a handle to the target. Raises ConnectError when the connection cannot be made.
        """
        try:
            handle = await self._open(target)
        except ConnectError as e:
            self.events.fire(ErrorEvent(self, e.kind, str(e)))
            raise
        self.events.fire(ConnectedEvent(self, handle))
        return handle

    async def send(self, handle: TransportHandle, data: bytes) -> int:
        """
        Writes all of data to the printer.
        :return: the number of bytes sent
        """
        if handle is None or not handle.open:
            raise NotConnectedError
        try:
            count = await self._send(handle, bytes(data))
        except SendError as e:
            self.events.fire(ErrorEvent(self, e.kind, str(e)))
            raise
        self.events.fire(BytesSentEvent(self, handle, count))
        return count

    async def close(self, handle: TransportHandle=None, reason='closed'):
        """
        Closes the given handle, or every handle from this transport when handle is None.
        Always safe to call. Raises DisconnectError if the native resource reported an error while closing,
        the handle is closed regardless.
        """
        handles = self.handles if handle is None else (handle,)
        failure = None
        for h in handles:
            self._untrack(h)
            try:
                closed = await h.close()
            except Exception as e:
                closed = True
                failure = failure or e
                self.logger.warning("error closing %s: %s" % (h.target, e))
            if closed:
                self.events.fire(ClosedEvent(self, h, reason))
        if failure is not None:
            raise DisconnectError("error closing connection: %s" % failure) from failure

    def _track(self, handle: TransportHandle):
        handle.on_lost = self._handle_lost
        self._live.append(handle)
        return handle

    def _untrack(self, handle):
        if handle in self._live:
            self._live.remove(handle)

    def _handle_lost(self, handle):
        """ the native connection dropped. The handle is released on the event loop, which fires ClosedEvent. """
        if handle in self._live:
            self.logger.info("connection to %s lost" % (handle.target,))
            task = asyncio.ensure_future(self._close_lost(handle))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def _close_lost(self, handle):
        try:
            await self.close(handle, 'lost')
        except DisconnectError as e:
            self.logger.debug("releasing lost connection to %s: %s" % (handle.target, e))

    @abstractmethod
    def _scan(self, name_filter, duration):
        """ template method, an async generator of PrinterCandidate """
        raise NotImplementedError

    @abstractmethod
    async def _open(self, target) -> TransportHandle:
        raise NotImplementedError

    @abstractmethod
    async def _send(self, handle, data: bytes) -> int:
        raise NotImplementedError
