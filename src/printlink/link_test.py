import asyncio
import unittest

from hamcrest import assert_that, is_, contains_exactly, empty, instance_of, has_item, none, is_not

from printlink.config.config import LinkConfig
from printlink.discovery import AddressFilter
from printlink.errors import BusyError, ConfigurationError, ConnectIoError, ConnectRefusedError, \
    ConnectTimeoutError, DiscoveryError, DiscoveryPermissionError, EncodingError, LinkError, LinkLostError, \
    NotConnectedError, OperationCancelledError, SendIoError, SendTimeoutError
from printlink.link import LinkManager, LinkState, LinkStatus, DiscoveryOutcome, SESSION_STATES
from printlink.protocol.encoder import encode, PrintJob
from printlink.transport.base import ConnectedEvent
from printlink.transport.base_test import FakeTransport, printer

# time budgets are scaled down so failures surface quickly
config = LinkConfig(connect_timeout_ms=50, scan_duration_ms=50, send_timeout_ms=50)


class LinkManagerTestCase(unittest.IsolatedAsyncioTestCase):

    def create(self, **kwargs):
        return LinkManager(self.transport, config, **kwargs).start()

    async def asyncSetUp(self):
        self.transport = FakeTransport([printer('AA')])
        self.sut = self.create()
        self.statuses = []
        self.handles = []       # (state, holds a handle) at each status
        self.sut.events += self.record

    async def asyncTearDown(self):
        await self.sut.shutdown()

    def record(self, event):
        if isinstance(event, LinkStatus):
            self.statuses.append(event)
            self.handles.append((event.state, self.sut._handle is not None))

    def states(self):
        return [s.state for s in self.statuses]

    async def connected(self):
        await self.sut.connect(printer('AA'))
        assert_that(self.sut.state, is_(LinkState.CONNECTED))


class LifecycleTest(LinkManagerTestCase):

    async def test_initial_status(self):
        status = self.sut.current_status()
        assert_that(status, is_(LinkStatus(LinkState.IDLE)))
        assert_that(status.candidates, is_(empty()))

    async def test_must_be_started(self):
        sut = LinkManager(FakeTransport(), config)
        with self.assertRaises(LinkError):
            await sut.connect('AA')

    async def test_async_with_closes_connection(self):
        transport = FakeTransport()
        async with LinkManager(transport, config) as sut:
            await sut.connect('AA')
        assert_that(sut.state, is_(LinkState.IDLE))
        assert_that(transport.handles, is_(empty()))
        assert_that(transport.close_calls, is_(1))

    async def test_shutdown_stops_listening(self):
        await self.sut.shutdown()
        assert_that(self.transport.events.handlers(), is_(empty()))

    async def test_transport_events_are_forwarded(self):
        events = []
        self.sut.events += events.append
        await self.connected()
        assert_that(events, has_item(instance_of(ConnectedEvent)))


class DiscoveryTest(LinkManagerTestCase):

    async def test_scan_budget_elapses_with_candidate(self):
        subscription = await self.sut.start_discovery()
        outcome = await subscription.wait()
        assert_that(outcome.reason, is_(DiscoveryOutcome.TIMEOUT))
        assert_that(outcome.candidates, contains_exactly(printer('AA')))
        assert_that(self.sut.state, is_(LinkState.CANDIDATES_FOUND))
        assert_that(self.sut.candidates, contains_exactly(printer('AA')))
        assert_that(self.sut.current_status().candidates, contains_exactly(printer('AA')))
        assert_that(self.transport.scans, contains_exactly(('Brother QL-820NWBC', 0.05)))

    async def test_scan_without_candidates_ends_idle(self):
        self.transport.candidates = []
        outcome = await (await self.sut.start_discovery()).wait()
        assert_that(outcome.reason, is_(DiscoveryOutcome.TIMEOUT))
        assert_that(self.sut.state, is_(LinkState.IDLE))

    async def test_subscription_yields_candidates(self):
        self.transport.candidates = [printer('AA'), printer('BB'), printer('AA')]
        found = [c async for c in await self.sut.start_discovery()]
        assert_that([c.id for c in found], contains_exactly('AA', 'BB'))

    async def test_new_discovery_clears_candidates(self):
        await (await self.sut.start_discovery()).wait()
        self.transport.candidates = [printer('BB')]
        await (await self.sut.start_discovery()).wait()
        assert_that(self.sut.candidates, contains_exactly(printer('BB')))

    async def test_name_filter_and_duration(self):
        self.transport.candidates = [printer('AA', 'Zebra')]
        outcome = await (await self.sut.start_discovery('Zebra', scan_duration_ms=20)).wait()
        assert_that(outcome.candidates, contains_exactly(printer('AA')))
        assert_that(self.transport.scans, contains_exactly(('Zebra', 0.02)))

    async def test_filter_applied_to_transport_results(self):
        self.transport.candidates = [printer('AA'), printer('BB')]
        self.sut = self.create(discovery_filter=AddressFilter(['BB']))
        outcome = await (await self.sut.start_discovery()).wait()
        assert_that(outcome.candidates, contains_exactly(printer('BB')))
        assert_that(self.transport.scans[0][0], is_(none()))

    async def test_invalid_duration(self):
        with self.assertRaises(ConfigurationError):
            await self.sut.start_discovery(scan_duration_ms=0)
        assert_that(self.sut.state, is_(LinkState.IDLE))

    async def test_stop_discovery(self):
        subscription = await self.sut.start_discovery(scan_duration_ms=10000)
        async for candidate in subscription:
            break
        outcome = await self.sut.stop_discovery()
        assert_that(outcome.reason, is_(DiscoveryOutcome.STOPPED))
        assert_that(self.sut.state, is_(LinkState.CANDIDATES_FOUND))
        assert_that(self.sut.candidates, contains_exactly(printer('AA')))

    async def test_stop_when_not_discovering(self):
        assert_that(await self.sut.stop_discovery(), is_(none()))
        assert_that(self.sut.state, is_(LinkState.IDLE))

    async def test_discovery_while_discovering_is_busy(self):
        subscription = await self.sut.start_discovery()
        with self.assertRaises(BusyError):
            await self.sut.start_discovery()
        outcome = await subscription.wait()
        assert_that(outcome.reason, is_(DiscoveryOutcome.TIMEOUT))
        assert_that(self.sut.state, is_(LinkState.CANDIDATES_FOUND))
        assert_that(len(self.transport.scans), is_(1))

    async def test_discovery_while_connecting_is_busy(self):
        self.transport.open_delay = 0.02
        connecting = asyncio.ensure_future(self.sut.connect('AA'))
        await asyncio.sleep(0)
        assert_that(self.sut.state, is_(LinkState.CONNECTING))
        with self.assertRaises(BusyError):
            await self.sut.start_discovery()
        await connecting
        assert_that(self.sut.state, is_(LinkState.CONNECTED))
        assert_that(self.transport.scans, is_(empty()))

    async def test_permission_denied(self):
        self.sut = self.create(permission_check=lambda: False)
        with self.assertRaises(DiscoveryPermissionError):
            await self.sut.start_discovery()
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.sut.last_error, instance_of(DiscoveryPermissionError))
        assert_that(self.transport.scans, is_(empty()))

    async def test_permission_check_raises(self):
        async def check():
            raise RuntimeError("no bluetooth permission")
        self.sut = self.create(permission_check=check)
        with self.assertRaises(DiscoveryPermissionError):
            await self.sut.start_discovery()

    async def test_permission_granted_asynchronously(self):
        async def check():
            return True
        self.sut = self.create(permission_check=check)
        await (await self.sut.start_discovery()).wait()
        assert_that(self.sut.state, is_(LinkState.CANDIDATES_FOUND))

    async def test_cancel_discovery(self):
        subscription = await self.sut.start_discovery(scan_duration_ms=10000)
        await self.sut.cancel()
        assert_that(subscription.outcome.reason, is_(DiscoveryOutcome.CANCELLED))
        assert_that(self.sut.state, is_(LinkState.IDLE))


    async def test_scan_failure_is_reported(self):
        self.transport.scan_error = DiscoveryError("bluetooth is turned off")
        subscription = await self.sut.start_discovery()
        with self.assertRaises(DiscoveryError):
            await subscription.wait()
        assert_that(subscription.outcome.reason, is_(DiscoveryOutcome.FAILED))
        assert_that(self.states()[-2:], contains_exactly(LinkState.ERROR, LinkState.IDLE))
        assert_that(self.sut.last_error, instance_of(DiscoveryError))
        with self.assertRaises(DiscoveryError):
            async for candidate in subscription:
                pass

    async def test_unexpected_scan_error_fails_discovery(self):
        self.transport.scan_error = RuntimeError("No Bluetooth adapters found.")
        subscription = await self.sut.start_discovery()
        with self.assertRaises(DiscoveryError) as raised:
            await subscription.wait()
        assert_that(raised.exception.__cause__, instance_of(RuntimeError))
        assert_that(subscription.outcome.reason, is_(DiscoveryOutcome.FAILED))
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.sut.current_status().last_error, instance_of(DiscoveryError))


class ConnectTest(LinkManagerTestCase):

    async def test_connect(self):
        await self.connected()
        status = self.sut.current_status()
        assert_that(status.connected_target, is_('AA'))
        assert_that(self.sut.session.target, is_('AA'))
        assert_that(self.states(), contains_exactly(LinkState.CONNECTING, LinkState.CONNECTED))

    async def test_connect_stops_discovery(self):
        subscription = await self.sut.start_discovery(scan_duration_ms=10000)
        async for candidate in subscription:
            await self.sut.connect(candidate)
        assert_that(subscription.outcome.reason, is_(DiscoveryOutcome.STOPPED))
        assert_that(self.sut.state, is_(LinkState.CONNECTED))
        assert_that(self.sut.candidates, contains_exactly(printer('AA')))

    async def test_connect_timeout(self):
        self.transport.open_delay = None
        with self.assertRaises(ConnectTimeoutError):
            await self.sut.connect('AA')
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))
        assert_that(self.transport.handles, is_(empty()))
        assert_that(self.sut.last_error, instance_of(ConnectTimeoutError))
        assert_that(self.states(), contains_exactly(LinkState.CONNECTING, LinkState.ERROR, LinkState.IDLE))

    async def test_connect_refused(self):
        self.transport.open_error = ConnectRefusedError()
        with self.assertRaises(ConnectRefusedError):
            await self.sut.connect('AA')
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))
        assert_that(self.sut.session, is_(none()))

    async def test_unexpected_open_error(self):
        self.transport.open_error = RuntimeError("No Bluetooth adapters found.")
        with self.assertRaises(ConnectIoError):
            await self.sut.connect('AA')
        assert_that(self.states(), contains_exactly(LinkState.CONNECTING, LinkState.ERROR, LinkState.IDLE))
        assert_that(self.transport.handles, is_(empty()))
        assert_that(self.sut.last_error, instance_of(ConnectIoError))
        self.transport.open_error = None
        await self.connected()

    async def test_connect_while_connected_is_busy(self):
        await self.connected()
        with self.assertRaises(BusyError):
            await self.sut.connect('BB')
        assert_that(self.sut.current_status().connected_target, is_('AA'))

    async def test_cancel_connect(self):
        self.sut.config = config.replace(connect_timeout_ms=10000)
        self.transport.open_delay = None
        connecting = asyncio.ensure_future(self.sut.connect('AA'))
        await asyncio.sleep(0.01)
        await self.sut.cancel()
        with self.assertRaises(OperationCancelledError):
            await connecting
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))
        assert_that(self.transport.handles, is_(empty()))

    async def test_caller_cancellation_closes(self):
        self.transport.open_delay = None
        connecting = asyncio.ensure_future(self.sut.connect('AA'))
        await asyncio.sleep(0.01)
        connecting.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await connecting
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))

    async def test_printer_lost(self):
        await self.connected()
        self.transport.drop(self.transport.opened[0])
        await asyncio.sleep(0.01)
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.sut.last_error, instance_of(LinkLostError))
        assert_that(self.states()[-2:], contains_exactly(LinkState.ERROR, LinkState.IDLE))
        with self.assertRaises(NotConnectedError):
            await self.sut.submit_print_job("label")


class PrintTest(LinkManagerTestCase):

    async def test_print(self):
        await self.connected()
        assert_that(await self.sut.submit_print_job("Hello\nReact Native"), is_(22))
        assert_that(self.sut.state, is_(LinkState.CONNECTED))
        assert_that(self.transport.sent, contains_exactly(encode("Hello\nReact Native")))

    async def test_print_job(self):
        await self.connected()
        assert_that(await self.sut.submit_print_job(PrintJob(b'raw')), is_(3))

    async def test_not_connected(self):
        with self.assertRaises(NotConnectedError):
            await self.sut.submit_print_job("label")
        assert_that(self.transport.sent, is_(empty()))
        assert_that(self.sut.state, is_(LinkState.IDLE))

    async def test_encoding_error_sends_nothing(self):
        await self.connected()
        with self.assertRaises(EncodingError):
            await self.sut.submit_print_job("café")
        assert_that(self.transport.sent, is_(empty()))
        assert_that(self.sut.state, is_(LinkState.CONNECTED))

    async def test_print_while_sending_is_busy(self):
        await self.connected()
        self.transport.send_delay = 0.01
        sending = asyncio.ensure_future(self.sut.submit_print_job("one"))
        await asyncio.sleep(0)
        assert_that(self.sut.state, is_(LinkState.SENDING))
        with self.assertRaises(BusyError):
            await self.sut.submit_print_job("two")
        assert_that(await sending, is_(7))
        assert_that(len(self.transport.sent), is_(1))

    async def test_send_timeout(self):
        await self.connected()
        self.transport.send_delay = None
        with self.assertRaises(SendTimeoutError):
            await self.sut.submit_print_job("label")
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))
        assert_that(self.transport.handles, is_(empty()))

    async def test_send_failure(self):
        await self.connected()
        self.transport.send_error = SendIoError("broken pipe")
        with self.assertRaises(SendIoError):
            await self.sut.submit_print_job("label")
        assert_that(self.states()[-3:], contains_exactly(LinkState.SENDING, LinkState.ERROR, LinkState.IDLE))
        assert_that(self.sut.current_status().last_error, instance_of(SendIoError))

    async def test_unexpected_send_error(self):
        await self.connected()
        self.transport.send_error = RuntimeError("Service Discovery has not been performed yet")
        with self.assertRaises(SendIoError):
            await self.sut.submit_print_job("label")
        assert_that(self.states()[-3:], contains_exactly(LinkState.SENDING, LinkState.ERROR, LinkState.IDLE))
        assert_that(self.transport.handles, is_(empty()))
        await self.sut.disconnect()
        with self.assertRaises(NotConnectedError):
            await self.sut.submit_print_job("label")

    async def test_cancel_send(self):
        await self.connected()
        self.sut.config = config.replace(send_timeout_ms=10000)
        self.transport.send_delay = None
        sending = asyncio.ensure_future(self.sut.submit_print_job("label"))
        await asyncio.sleep(0.01)
        await self.sut.cancel()
        with self.assertRaises(OperationCancelledError):
            await sending
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))


class DisconnectTest(LinkManagerTestCase):

    async def test_disconnect(self):
        await self.connected()
        await self.sut.disconnect()
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))
        assert_that(self.states()[-2:], contains_exactly(LinkState.DISCONNECTING, LinkState.IDLE))

    async def test_disconnect_after_error(self):
        self.transport.open_error = ConnectRefusedError()
        with self.assertRaises(ConnectRefusedError):
            await self.sut.connect('AA')
        await self.sut.disconnect()
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))

    async def test_disconnect_when_idle(self):
        await self.sut.disconnect()
        assert_that(self.transport.close_calls, is_(0))
        assert_that(self.statuses, is_(empty()))

    async def test_concurrent_disconnects_share_close(self):
        await self.connected()
        await asyncio.gather(self.sut.disconnect(), self.sut.disconnect())
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))

    async def test_disconnect_while_sending_is_busy(self):
        await self.connected()
        self.transport.send_delay = 0.01
        sending = asyncio.ensure_future(self.sut.submit_print_job("one"))
        await asyncio.sleep(0)
        with self.assertRaises(BusyError):
            await self.sut.disconnect()
        await sending

    async def test_cancel_when_connected(self):
        await self.connected()
        await self.sut.cancel()
        assert_that(self.sut.state, is_(LinkState.IDLE))
        assert_that(self.transport.close_calls, is_(1))

    async def test_reconnect_after_disconnect(self):
        await self.connected()
        await self.sut.disconnect()
        await self.connected()
        assert_that(self.sut.session, is_not(none()))


class HandleInvariantTest(LinkManagerTestCase):
    """ a handle is held exactly while connected, sending or disconnecting """

    def assert_invariant(self):
        assert_that(self.handles, is_not(empty()))
        for state, holds_handle in self.handles:
            assert_that(holds_handle, is_(state in SESSION_STATES), str(state))

    async def test_through_print_and_disconnect(self):
        await self.connected()
        await self.sut.submit_print_job("label")
        await self.sut.disconnect()
        self.assert_invariant()

    async def test_through_send_failure(self):
        await self.connected()
        self.transport.send_error = SendIoError()
        with self.assertRaises(SendIoError):
            await self.sut.submit_print_job("label")
        self.assert_invariant()

    async def test_through_lost_connection(self):
        await self.connected()
        self.transport.drop(self.transport.opened[0])
        await asyncio.sleep(0.01)
        self.assert_invariant()
