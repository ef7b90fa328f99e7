import asyncio
import logging

from printlink.config.config import RAW_PRINT_PORT
from printlink.errors import ConfigurationError, ConnectIoError, ConnectRefusedError, ConnectTimeoutError, \
    LinkLostError, OperationCancelledError, SendIoError
from printlink.transport.base import PrinterCandidate, Transport, TransportHandle, TransportKind

logger = logging.getLogger(__name__)


class SocketEndpoint:
    """
    Describes the raw print port of a networked printer.
    """
    def __init__(self, host, port=RAW_PRINT_PORT):
        self.host = host
        self.port = port

    def key(self):
        """
        >>> SocketEndpoint('printer.local', 9100).key()
        'printer.local:9100'
        >>> SocketEndpoint('::1', 9100).key()
        '[::1]:9100'
        """
        host = '[%s]' % self.host if ':' in self.host else self.host
        return host + ':' + str(self.port)

    def candidate(self):
        return PrinterCandidate(self.key(), self.host, TransportKind.SOCKET)

    def __eq__(self, other):
        return isinstance(other, SocketEndpoint) and (other.host, other.port) == (self.host, self.port)

    def __hash__(self):
        return hash((self.host, self.port))

    def __repr__(self):
        return 'SocketEndpoint(%s)' % self.key()


def parse_endpoint(text, default_port=RAW_PRINT_PORT) -> SocketEndpoint:
    """
    >>> parse_endpoint('10.0.0.7')
    SocketEndpoint(10.0.0.7:9100)
    >>> parse_endpoint('10.0.0.7:9101')
    SocketEndpoint(10.0.0.7:9101)
    >>> parse_endpoint('[fe80::1]:9100')
    SocketEndpoint([fe80::1]:9100)
    """
    text = text.strip()
    port = default_port
    if text.startswith('['):
        host, sep, rest = text[1:].partition(']')
        if not sep or (rest and not rest.startswith(':')):
            raise ConfigurationError("%r is not a valid host[:port]" % text)
        if rest:
            port = rest[1:]
    elif text.count(':') == 1:
        host, port = text.split(':')
    else:
        host = text     # a name, an ipv4 address or a bare ipv6 address
    if not host:
        raise ConfigurationError("%r has no host" % text)
    try:
        port = int(port)
    except ValueError as e:
        raise ConfigurationError("%r is not a valid port" % port) from e
    if not 0 < port < 65536:
        raise ConfigurationError("port %d is out of range" % port)
    return SocketEndpoint(host, port)


class SocketHandle(TransportHandle):
    """
    A stream connection to the printer's raw print port.
    The printer may send status bytes back. These are read and discarded so that end of stream
    is noticed when the printer closes the connection.
    """
    def __init__(self, target: SocketEndpoint, log=logger):
        super().__init__(target)
        self.reader = None
        self.writer = None
        self.opening = None     # the pending connection attempt
        self._watcher = None
        self.logger = log

    def attach(self, reader, writer):
        self.reader = reader
        self.writer = writer
        self._watcher = asyncio.ensure_future(self._watch())

    async def _watch(self):
        try:
            while (await self.reader.read(1024)):
                pass
        except ConnectionError as e:
            self.logger.debug("connection to %s: %s" % (self.target.key(), e))
        self._lost()

    def _connected(self):
        return self.writer is not None and not self.writer.is_closing()

    async def _release(self):
        if self.opening is not None:
            self.opening.cancel()
        if self._watcher is not None:
            self._watcher.cancel()
        writer = self.writer
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError as e:
            self.logger.debug("connection to %s already reset: %s" % (self.target.key(), e))


class SocketTransport(Transport):
    """
    Sends print jobs to the raw print port (usually 9100) of a networked printer.
    There is no discovery, printers are addressed directly as host[:port].

    :param connect_timeout: seconds to wait for the printer to accept the connection
    """

    kind = TransportKind.SOCKET

    def __init__(self, default_port=RAW_PRINT_PORT, connect_timeout=10.0, log=logger):
        super().__init__(log)
        self.default_port = default_port
        self.connect_timeout = connect_timeout

    @classmethod
    def from_config(cls, config, **kwargs):
        return cls(config.port, connect_timeout=config.connect_timeout, **kwargs)

    def resolve_target(self, target) -> SocketEndpoint:
        if isinstance(target, SocketEndpoint):
            return target
        if isinstance(target, PrinterCandidate):
            if target.transport_kind is not self.kind:
                raise ConfigurationError("%s is not a networked printer" % (target,))
            return parse_endpoint(target.id, self.default_port)
        if isinstance(target, tuple) and len(target) == 2:
            return parse_endpoint('[%s]:%s' % target, self.default_port)
        if isinstance(target, str) and target.strip():
            return parse_endpoint(target, self.default_port)
        raise ConfigurationError("%r is not a host[:port]" % (target,))

    async def _scan(self, name_filter, duration):
        self.logger.debug("networked printers are not discovered, connect to host:port")
        return
        yield   # an empty async generator

    async def _open(self, target: SocketEndpoint):
        handle = self._track(SocketHandle(target, self.logger))
        handle.opening = asyncio.ensure_future(asyncio.open_connection(target.host, target.port))
        try:
            reader, writer = await asyncio.wait_for(handle.opening, self.connect_timeout)
        except asyncio.CancelledError:
            if handle.closed:
                raise OperationCancelledError("connection to %s was closed while opening" % target.key()) from None
            raise
        except ConnectionRefusedError as e:
            raise ConnectRefusedError("%s refused the connection" % target.key()) from e
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise ConnectTimeoutError("no response from %s" % target.key()) from e
        except OSError as e:
            raise ConnectIoError("cannot connect to %s: %s" % (target.key(), e)) from e
        finally:
            handle.opening = None
        if handle.closed:
            writer.close()
            raise OperationCancelledError("connection to %s was closed while opening" % target.key())
        handle.attach(reader, writer)
        self.logger.info("opened socket to %s" % target.key())
        return handle

    async def _send(self, handle: SocketHandle, data):
        try:
            handle.writer.write(data)
            await handle.writer.drain()
        except ConnectionError as e:
            raise LinkLostError("%s closed the connection: %s" % (handle.target.key(), e)) from e
        except OSError as e:
            raise SendIoError("write to %s failed: %s" % (handle.target.key(), e)) from e
        self.logger.debug("wrote %d bytes to %s" % (len(data), handle.target.key()))
        return len(data)
