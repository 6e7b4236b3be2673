import asyncio
import struct
import unittest
from unittest.mock import Mock, AsyncMock, patch

import timeout_decorator
from hamcrest import assert_that, is_, is_not, none, instance_of, contains_exactly, calling, raises, empty

from comfobridge.connector.base import ConnectedEvent, DisconnectedEvent, ErrorEvent, ReceivedEvent, \
    ConnectionState, ConnectionTimeout, TransportError, NotConnectedError, WriteError, ConnectorError
from comfobridge.connector.socketconn import ConnectionManager, TCPServerEndpoint
from comfobridge.protocol.framing import FrameDecoder


def frame(body: bytes) -> bytes:
    return struct.pack('>I', len(body)) + body


def event_types(events):
    return [type(e) for e in events]


def mock_transport(sut):
    transport = Mock()
    transport.is_closing.return_value = False
    transport.close.side_effect = lambda: sut.connection_lost(None)
    return transport


class TCPServerEndpointTest(unittest.TestCase):
    def test_key(self):
        assert_that(TCPServerEndpoint(None, '10.0.0.1', 56747).key(), is_('10.0.0.1:56747'))
        assert_that(TCPServerEndpoint('gateway', '10.0.0.1', 1).host, is_('10.0.0.1'))
        assert_that(str(TCPServerEndpoint('gateway', None, 1)), is_('gateway:1'))


class ConnectionManagerTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.sut = ConnectionManager(idle_timeout=0.05)
        self.events = []
        self.sut.events += self.events.append
        self.transport = mock_transport(self.sut)

    async def test_initial_state(self):
        assert_that(self.sut.state, is_(ConnectionState.DISCONNECTED))
        assert_that(self.sut.connected, is_(False))
        assert_that(self.sut.destroyed, is_(False))

    async def test_connected(self):
        self.sut.connection_made(self.transport)
        assert_that(self.sut.state, is_(ConnectionState.CONNECTED))
        assert_that(event_types(self.events), contains_exactly(ConnectedEvent))
        sock = self.transport.get_extra_info.return_value
        sock.setsockopt.assert_called()

    async def test_timeout_while_connected(self):
        self.sut.connection_made(self.transport)
        await asyncio.sleep(0.15)
        assert_that(event_types(self.events), contains_exactly(ConnectedEvent, ErrorEvent, DisconnectedEvent))
        error = self.events[1]
        assert_that(error.reason, is_('timeout'))
        assert_that(error.error, is_(instance_of(ConnectionTimeout)))
        assert_that(self.events[2].had_error, is_(False))
        assert_that(self.sut.state, is_(ConnectionState.DISCONNECTED))
        assert_that(self.sut.destroyed, is_(True))

    async def test_traffic_rearms_timer(self):
        self.sut.connection_made(self.transport)
        for _ in range(4):
            await asyncio.sleep(0.03)
            self.sut.data_received(b'')
        assert_that(event_types(self.events), contains_exactly(ConnectedEvent))

    async def test_timeout_while_connecting_is_not_reported(self):
        loop = asyncio.get_running_loop()
        never = loop.create_future()
        with patch.object(loop, 'create_connection', return_value=never):
            self.sut.connect('10.0.0.1', 1234)
            await asyncio.sleep(0.15)
            assert_that(self.events, is_(empty()))
            assert_that(self.sut.state, is_(ConnectionState.CONNECTING))
            with patch.object(self.sut, '_arm_timer', wraps=self.sut._arm_timer) as arm_timer:
                await asyncio.sleep(0.08)
            arm_timer.assert_called()
            assert_that(self.sut._timer, is_not(none()))
            self.sut.destroy()
        assert_that(event_types(self.events), contains_exactly(DisconnectedEvent))
        assert_that(self.sut.destroyed, is_(True))

    async def test_connect_twice_returns_same_attempt(self):
        loop = asyncio.get_running_loop()
        never = loop.create_future()
        with patch.object(loop, 'create_connection', return_value=never) as create_connection:
            first = self.sut.connect('10.0.0.1', 1234)
            second = self.sut.connect('10.0.0.1', 1234)
            await asyncio.sleep(0)
            assert_that(second, is_(first))
            create_connection.assert_called_once()
            self.sut.destroy()

    async def test_connect_refused(self):
        loop = asyncio.get_running_loop()
        with patch.object(loop, 'create_connection', AsyncMock(side_effect=ConnectionRefusedError('refused'))):
            await self.sut.connect('10.0.0.1', 1234)
        assert_that(event_types(self.events), contains_exactly(ErrorEvent, DisconnectedEvent))
        assert_that(self.events[0].error, is_(instance_of(TransportError)))
        assert_that(self.events[0].error.__cause__, is_(instance_of(ConnectionRefusedError)))
        assert_that(self.events[1].had_error, is_(True))
        assert_that(self.sut.destroyed, is_(True))
        assert_that(calling(self.sut.connect).with_args('10.0.0.1', 1234), raises(ConnectorError))

    async def test_transport_error(self):
        self.sut.connection_made(self.transport)
        self.sut.connection_lost(ConnectionResetError('reset'))
        assert_that(event_types(self.events), contains_exactly(ConnectedEvent, ErrorEvent, DisconnectedEvent))
        assert_that(self.events[1].error, is_(instance_of(TransportError)))
        assert_that(self.events[2].had_error, is_(True))
        self.sut.connection_lost(ConnectionResetError('again'))
        assert_that(len(self.events), is_(3))

    async def test_received_frames(self):
        self.sut.connection_made(self.transport)
        self.sut.data_received(frame(b'one') + frame(b'two')[:2])
        self.sut.data_received(frame(b'two')[2:])
        received = [e for e in self.events if isinstance(e, ReceivedEvent)]
        assert_that([e.data for e in received], contains_exactly(frame(b'one'), frame(b'two')))
        assert_that(received[0].kind, is_(-1))
        assert_that(received[0].msg, is_(None))
        assert_that(received[0].time, is_(received[0].frame.received_at))

    async def test_invalid_frame_closes(self):
        sut = ConnectionManager(decoder=FrameDecoder(max_length=2))
        sut.events += self.events.append
        transport = mock_transport(sut)
        sut.connection_made(transport)
        sut.data_received(frame(b'too long'))
        assert_that(event_types(self.events), contains_exactly(ConnectedEvent, ErrorEvent, DisconnectedEvent))
        transport.close.assert_called_once()

    async def test_eof(self):
        assert_that(self.sut.eof_received(), is_(False))

    async def test_write(self):
        self.sut.connection_made(self.transport)
        await self.sut.write(b'abc')
        self.transport.write.assert_called_once_with(b'abc')

    async def test_write_not_connected(self):
        with self.assertRaises(NotConnectedError):
            await self.sut.write(b'abc')

    async def test_write_closing(self):
        self.sut.connection_made(self.transport)
        self.transport.is_closing.return_value = True
        with self.assertRaises(WriteError):
            await self.sut.write(b'abc')

    async def test_write_raises(self):
        self.sut.connection_made(self.transport)
        self.transport.write.side_effect = RuntimeError('broken')
        with self.assertRaises(WriteError):
            await self.sut.write(b'abc')

    async def test_write_waits_for_resume(self):
        self.sut.connection_made(self.transport)
        self.sut.pause_writing()
        task = asyncio.ensure_future(self.sut.write(b'abc'))
        await asyncio.sleep(0)
        assert_that(task.done(), is_(False))
        self.sut.resume_writing()
        await task

    async def test_write_lost_while_paused(self):
        self.sut.connection_made(self.transport)
        self.sut.pause_writing()
        task = asyncio.ensure_future(self.sut.write(b'abc'))
        await asyncio.sleep(0)
        self.sut.connection_lost(BrokenPipeError('pipe'))
        with self.assertRaises(WriteError):
            await task

    async def test_write_lost_during_send(self):
        self.sut.connection_made(self.transport)
        loop = asyncio.get_running_loop()
        self.transport.write.side_effect = \
            lambda data: loop.call_soon(self.sut.connection_lost, ConnectionResetError('reset'))
        with self.assertRaises(WriteError):
            await self.sut.write(b'abc')

    async def test_destroy_unused_handle(self):
        self.sut.destroy()
        assert_that(self.events, is_(empty()))
        assert_that(self.sut.destroyed, is_(True))

    async def test_destroy_connected(self):
        self.sut.connection_made(self.transport)
        self.sut.destroy()
        self.transport.abort.assert_called_once()
        assert_that(event_types(self.events), contains_exactly(ConnectedEvent, DisconnectedEvent))


async def echo_two_frames(reader, writer):
    await reader.readexactly(4)
    writer.write(frame(b'one') + frame(b'two'))
    await writer.drain()
    writer.close()


class LoopbackTest(unittest.TestCase):
    """ functional test against a local server that answers with two frames and closes """

    async def scenario(self):
        server = await asyncio.start_server(echo_two_frames, '127.0.0.1', 0)
        port = server.sockets[0].getsockname()[1]
        sut = ConnectionManager()
        events = []
        sut.events += events.append
        connected = sut.events.next_event(lambda e: isinstance(e, ConnectedEvent))
        disconnected = sut.events.next_event(lambda e: isinstance(e, DisconnectedEvent))
        try:
            sut.connect('127.0.0.1', port)
            await asyncio.wait_for(connected, 2)
            await sut.write(b'ping')
            await asyncio.wait_for(disconnected, 2)
        finally:
            sut.destroy()
            server.close()
            await server.wait_closed()
        return sut, events

    @timeout_decorator.timeout(5)
    def test_round_trip(self):
        sut, events = asyncio.run(self.scenario())
        assert_that(event_types(events),
                    contains_exactly(ConnectedEvent, ReceivedEvent, ReceivedEvent, DisconnectedEvent))
        assert_that([e.data for e in events if isinstance(e, ReceivedEvent)],
                    contains_exactly(frame(b'one'), frame(b'two')))
        assert_that(sut.destroyed, is_(True))


if __name__ == '__main__':  # pragma: no cover
    unittest.main()
