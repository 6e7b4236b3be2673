import asyncio
import logging
import socket

from comfobridge.connector.base import ConnectionState, ConnectorError, ConnectionTimeout, TransportError, \
    NotConnectedError, WriteError, ConnectedEvent, DisconnectedEvent, ErrorEvent, ReceivedEvent
from comfobridge.protocol.framing import FrameDecoder, FramingError
from comfobridge.support.events import EventSource
from comfobridge.support.logs import raw_logger

logger = logging.getLogger(__name__)

IDLE_TIMEOUT = 15.0
KEEPALIVE_INTERVAL = 5.0


class TCPServerEndpoint:
    """
    Describes a TCP server endpoint.
    At least one of name or ip_address should be given. If both are given, the ip_address is used
    to connect.
    """
    def __init__(self, hostname, ip_address, port):
        self.hostname = hostname
        self.ip_address = ip_address
        self.port = port

    @property
    def host(self):
        return self.ip_address or self.hostname

    def key(self):
        """
        >>> TCPServerEndpoint(None, 'ipaddr', 55).key()
        'ipaddr:55'
        >>> TCPServerEndpoint('name', 'ipaddr', 55).key()
        'name:55'
        """
        return str(self.hostname or self.ip_address) + ':' + str(self.port)

    def __str__(self):
        return self.key()


def with_cause(error, cause):
    error.__cause__ = cause
    return error


class ConnectionManager(asyncio.Protocol):
    """
    Owns one TCP connection to the device and reports its lifecycle as events on `events`:
    ConnectedEvent, ErrorEvent, DisconnectedEvent and one ReceivedEvent per inbound frame.

    An instance is a single socket handle. Once the connection is closed, by either side,
    by an error or by destroy(), the instance is destroyed and cannot connect again; a new
    instance is needed. Nothing is retried here.

    The idle timer is armed when connecting and re-armed by traffic in either direction.
    When it expires on an established connection, an ErrorEvent with reason 'timeout' is
    fired and the connection closed. When it expires at any other time it is only logged, and
    while still connecting it is armed again.
    """

    def __init__(self, idle_timeout=IDLE_TIMEOUT, keepalive=KEEPALIVE_INTERVAL, decoder: FrameDecoder=None,
                 loop=None):
        """
        :param idle_timeout: seconds without traffic before the connection is declared dead.
        :param keepalive: seconds between TCP keep-alive probes once connected.
        :param decoder: splits the inbound stream into frames.
        """
        self.events = EventSource()
        self.idle_timeout = idle_timeout
        self.keepalive = keepalive
        self.decoder = decoder or FrameDecoder()
        self._loop = loop
        self._state = ConnectionState.DISCONNECTED
        self._endpoint = None
        self._transport = None
        self._connect_task = None
        self._timer = None
        self._destroyed = False
        self._error_reported = False
        self._lost_error = None
        self._paused = False
        self._drain_waiters = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def endpoint(self) -> TCPServerEndpoint:
        return self._endpoint

    def connect(self, host, port) -> asyncio.Task:
        """
        Starts connecting to the given host and port. Progress is reported through events.
        Returns the task making the connection. Calling connect() while connecting or
        connected returns the existing task.
        """
        if self._destroyed:
            raise ConnectorError("socket handle for %s was destroyed" % self._endpoint)
        if self._state is not ConnectionState.DISCONNECTED:
            return self._connect_task
        self._loop = self._loop or asyncio.get_running_loop()
        self._endpoint = TCPServerEndpoint(None, host, port)
        self._state = ConnectionState.CONNECTING
        logger.debug("connecting to %s" % self._endpoint)
        self._arm_timer()
        self._connect_task = self._loop.create_task(self._open(host, port))
        return self._connect_task

    async def _open(self, host, port):
        try:
            await self._loop.create_connection(lambda: self, host, port)
        except OSError as e:
            self._report(with_cause(TransportError("unable to connect to %s: %s" % (self._endpoint, e)), e))
            self._teardown(had_error=True)

    def destroy(self):
        """ Aborts the connection, if any, and makes this handle unusable. """
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
        transport = self._transport
        if transport is not None:
            transport.abort()
        self._teardown(had_error=False)

    async def write(self, data: bytes):
        """
        Writes data to the connection. Completes when the transport has accepted the data
        and its write buffer is below the high-water mark.
        :raises NotConnectedError: when not connected
        :raises WriteError: when the write fails or the connection is lost while writing
        """
        transport = self._transport
        if not self.connected or transport is None:
            raise NotConnectedError("not connected to %s" % self._endpoint)
        if transport.is_closing():
            raise WriteError("connection to %s is closing" % self._endpoint)
        raw_logger.debug(" -> TX : %s" % data.hex())
        try:
            transport.write(data)
        except (OSError, RuntimeError, TypeError) as e:
            raise WriteError("error sending data to %s: %s" % (self._endpoint, e)) from e
        self._arm_timer()
        await self._drain()
        if self._transport is not transport and self._lost_error is not None:
            raise WriteError("connection to %s lost while sending" % self._endpoint) from self._lost_error

    async def _drain(self):
        if self._paused:
            waiter = self._loop.create_future()
            self._drain_waiters.append(waiter)
            await waiter
        else:
            # let a failed send surface through connection_lost()
            await asyncio.sleep(0)

    # asyncio.Protocol callbacks

    def connection_made(self, transport):
        if self._destroyed:
            transport.abort()
            return
        self._loop = self._loop or asyncio.get_running_loop()
        self._transport = transport
        sock = transport.get_extra_info('socket')
        if sock is not None:
            self._configure_socket(sock)
        self.decoder.reset()
        self._state = ConnectionState.CONNECTED
        self._arm_timer()
        logger.info("connected to %s" % self._endpoint)
        self.events.fire(ConnectedEvent(self))

    def _configure_socket(self, sock):
        """ flush writes promptly and probe an idle connection """
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            interval = max(1, int(self.keepalive))
            if hasattr(socket, 'TCP_KEEPIDLE'):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, interval)
            if hasattr(socket, 'TCP_KEEPINTVL'):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval)
        except OSError as e:
            logger.warning("unable to set socket options on %s: %s" % (self._endpoint, e))

    def data_received(self, data):
        self._arm_timer()
        try:
            for frame in self.decoder.feed(data):
                raw_logger.debug(" <- RX : %s" % frame.payload.hex())
                self.events.fire(ReceivedEvent(self, frame))
        except FramingError as e:
            self._report(with_cause(TransportError("invalid data from %s: %s" % (self._endpoint, e)), e))
            self._close()

    def eof_received(self):
        logger.debug("TCP socket ended by %s" % self._endpoint)
        return False

    def connection_lost(self, exc):
        if exc is not None:
            self._lost_error = exc
            self._report(with_cause(TransportError("socket error on %s: %s" % (self._endpoint, exc)), exc))
        self._teardown(had_error=exc is not None)

    def pause_writing(self):
        self._paused = True

    def resume_writing(self):
        self._paused = False
        self._wake_writers()

    # state transitions

    def _report(self, error):
        """ fires an ErrorEvent, at most once per handle and never after it is destroyed """
        if self._error_reported or self._destroyed:
            logger.debug("suppressed further error on %s: %s" % (self._endpoint, error))
            return
        self._error_reported = True
        logger.error("%s" % error)
        self.events.fire(ErrorEvent(self, error))

    def _close(self):
        self._state = ConnectionState.CLOSING
        if self._transport is not None:
            self._transport.close()

    def _teardown(self, had_error):
        if self._destroyed:
            return
        self._destroyed = True
        self._cancel_timer()
        was_active = self._state is not ConnectionState.DISCONNECTED
        self._state = ConnectionState.DISCONNECTED
        self._transport = None
        self._wake_writers(WriteError("connection to %s closed" % self._endpoint))
        if not was_active:
            return
        if had_error:
            logger.error("TCP socket to %s closed with error" % self._endpoint)
        else:
            logger.info("TCP socket to %s closed" % self._endpoint)
        self.events.fire(DisconnectedEvent(self, had_error))

    def _wake_writers(self, error=None):
        waiters, self._drain_waiters = self._drain_waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(error)

    # idle timer

    def _arm_timer(self):
        self._cancel_timer()
        if self.idle_timeout and self._loop is not None:
            self._timer = self._loop.call_later(self.idle_timeout, self._on_timeout)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self):
        self._timer = None
        if self._state is ConnectionState.CONNECTED:
            logger.error("TCP socket timeout on %s" % self._endpoint)
            self._report(ConnectionTimeout('timeout'))
            self._close()
        else:
            logger.debug("TCP socket timeout on %s while %s, ignored" % (self._endpoint, self._state.value))
            if self._state is ConnectionState.CONNECTING:
                self._arm_timer()
