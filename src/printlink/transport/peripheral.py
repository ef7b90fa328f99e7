"""
Bluetooth low energy transport. Printers are found by scanning advertisements, and print jobs are written
to a GATT characteristic. The service and characteristic identifiers depend on the printer model and are
configuration: they are not discovered.
"""
import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakDeviceNotFoundError, BleakError

from printlink.config.config import normalize_uuid
from printlink.errors import ConfigurationError, ConnectIoError, ConnectTimeoutError, DiscoveryError, SendIoError
from printlink.transport.base import PrinterCandidate, Transport, TransportHandle, TransportKind

logger = logging.getLogger(__name__)


class PeripheralHandle(TransportHandle):
    """
    A connection to a bluetooth printer, wrapping the BleakClient.
    """
    def __init__(self, target):
        super().__init__(target)
        self.client = None

    def disconnected(self, client):
        """ bleak callback when the peripheral disconnects """
        self._lost()

    def _connected(self):
        return self.client is not None and self.client.is_connected

    async def _release(self):
        client = self.client
        if client is not None:
            try:
                await client.disconnect()
            except BleakError as e:
                raise ConnectIoError("error disconnecting from %s: %s" % (self.target, e)) from e


class PeripheralTransport(Transport):
    """
    Scans for printers with a BleakScanner and connects with a BleakClient.

    :param service_uuid: the GATT service that print jobs are written to
    :param characteristic_uuid: the characteristic within the service. Both are needed to connect,
        scanning works without them.
    :param connect_timeout: seconds bleak waits for the connection. The link manager applies its own
        connect timeout on top of this.
    :param scanner_factory, client_factory: construct the bleak scanner and client, replaceable for testing.
    """

    kind = TransportKind.PERIPHERAL

    def __init__(self, service_uuid=None, characteristic_uuid=None, connect_timeout=10.0,
                 scanner_factory=BleakScanner, client_factory=BleakClient, log=logger):
        super().__init__(log)
        self.service_uuid = normalize_uuid(service_uuid, 'service_uuid') if service_uuid else None
        self.characteristic_uuid = normalize_uuid(characteristic_uuid, 'characteristic_uuid') \
            if characteristic_uuid else None
        self.connect_timeout = connect_timeout
        self.scanner_factory = scanner_factory
        self.client_factory = client_factory
        self._devices = {}      # address to the BLEDevice last seen advertising
        self._scan_queue = None

    @classmethod
    def from_config(cls, config, **kwargs):
        return cls(config.service_uuid, config.characteristic_uuid, connect_timeout=config.connect_timeout,
                   **kwargs)

    def resolve_target(self, target):
        """
        A target is a candidate from discovery or a bluetooth address (or, on macOS, a device uuid.)
        """
        normalize_uuid(self.service_uuid, 'service_uuid')
        normalize_uuid(self.characteristic_uuid, 'characteristic_uuid')
        if isinstance(target, PrinterCandidate):
            if target.transport_kind is not self.kind:
                raise ConfigurationError("%s is not a bluetooth printer" % (target,))
            return target.id
        if isinstance(target, str) and target.strip():
            return target.strip().upper()
        raise ConfigurationError("%r is not a bluetooth address" % (target,))

    async def _scan(self, name_filter, duration):
        queue = self._scan_queue = asyncio.Queue()
        seen = set()

        def detected(device, advertisement):
            name = advertisement.local_name or device.name
            if name_filter is not None and name != name_filter:
                return
            self._devices[device.address] = device
            if device.address in seen:
                return
            seen.add(device.address)
            queue.put_nowait(PrinterCandidate(device.address, name or device.address, self.kind))

        try:
            scanner = self.scanner_factory(detection_callback=detected)
            await scanner.start()
        except (BleakError, OSError) as e:
            self._scan_queue = None
            raise DiscoveryError("bluetooth scan could not start: %s" % e) from e
        self.logger.info("scanning for %s" % (name_filter or "any printer"))

        loop = asyncio.get_running_loop()
        deadline = None if duration is None else loop.time() + duration
        try:
            while True:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    break
                try:
                    candidate = await asyncio.wait_for(queue.get(), remaining)
                except asyncio.TimeoutError:
                    break
                if candidate is None:   # stop_discovery()
                    break
                self.logger.info("found printer %s (%s)" % (candidate.display_name, candidate.id))
                yield candidate
        finally:
            self._scan_queue = None
            try:
                await scanner.stop()
            except (BleakError, OSError) as e:
                self.logger.debug("error stopping scan: %s" % e)
            self.logger.info("scan stopped")

    async def stop_discovery(self):
        queue = self._scan_queue
        if queue is not None:
            queue.put_nowait(None)

    async def _open(self, target):
        handle = self._track(PeripheralHandle(target))
        device = self._devices.get(target, target)
        try:
            handle.client = self.client_factory(device, disconnected_callback=handle.disconnected,
                                                timeout=self.connect_timeout)
            await handle.client.connect()
        except asyncio.TimeoutError as e:
            raise ConnectTimeoutError("no response from %s" % target) from e
        except BleakDeviceNotFoundError as e:
            raise ConnectIoError("printer %s not found" % target) from e
        except (BleakError, OSError) as e:
            raise ConnectIoError("cannot connect to %s: %s" % (target, e)) from e
        self.logger.info("connected to %s" % target)
        return handle

    def _characteristic(self, client):
        service = client.services.get_service(self.service_uuid)
        characteristic = service.get_characteristic(self.characteristic_uuid) if service is not None else None
        if characteristic is None:
            raise SendIoError("printer has no characteristic %s in service %s"
                              % (self.characteristic_uuid, self.service_uuid))
        return characteristic

    async def _send(self, handle, data):
        client = handle.client
        try:
            characteristic = self._characteristic(client)
            await client.write_gatt_char(characteristic, data, response=True)
        except (BleakError, OSError) as e:
            raise SendIoError("write to %s failed: %s" % (handle.target, e)) from e
        self.logger.debug("wrote %d bytes to %s" % (len(data), handle.target))
        return len(data)
