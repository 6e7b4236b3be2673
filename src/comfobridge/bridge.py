import asyncio
import logging

from comfobridge.conduit import discovery
from comfobridge.conduit.discovery import DiscoveryState
from comfobridge.connector.base import ConnectedEvent, DisconnectedEvent, ConnectionState, ConnectionTimeout, \
    NotConnectedError
from comfobridge.connector.socketconn import ConnectionManager, IDLE_TIMEOUT, KEEPALIVE_INTERVAL
from comfobridge.protocol.framing import TxHeader
from comfobridge.protocol.schema import DiscoveryDecoder
from comfobridge.settings import Settings
from comfobridge.support.events import EventSource
from comfobridge.support.logs import apply_verbosity

logger = logging.getLogger(__name__)


class Bridge:
    """
    The bridge to one ventilation unit.

    discover() finds the gateway, transmit() sends one message, connecting first when
    needed. Connection events and inbound frames are re-fired on `events` as
    ConnectedEvent, DisconnectedEvent, ErrorEvent and ReceivedEvent.

    A closed or failed connection is never reused: the next transmit() creates a fresh
    ConnectionManager.
    """

    def __init__(self, settings: Settings, idle_timeout=IDLE_TIMEOUT, keepalive=KEEPALIVE_INTERVAL,
                 connect_timeout=None, decoder: DiscoveryDecoder=None, connection_factory=None):
        """
        :param settings: the local identity and what is known about the device.
        :param idle_timeout: seconds of silence before a connection is declared dead.
        :param keepalive: seconds between keep-alive probes.
        :param connect_timeout: seconds to wait for a connection, by default the idle timeout,
            or IDLE_TIMEOUT when the idle timer is disabled.
        :param decoder: decodes discovery replies.
        :param connection_factory: creates a ConnectionManager; called with no arguments.
        """
        self.events = EventSource()
        self.idle_timeout = idle_timeout
        self.keepalive = keepalive
        if connect_timeout is not None and connect_timeout <= 0:
            raise ValueError("connect timeout must be positive, got %s" % connect_timeout)
        self.connect_timeout = connect_timeout or idle_timeout or IDLE_TIMEOUT
        self.decoder = decoder or DiscoveryDecoder()
        self.connection_factory = connection_factory or self._new_connection
        self._connection = None
        self._connect_lock = None
        self._discovered = None
        self._discovery_state = DiscoveryState.UNKNOWN
        self._header = None
        self._settings = None
        self.settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings

    @settings.setter
    def settings(self, value: Settings):
        """ replaces the settings; a known remote identity makes the bridge ready to transmit """
        self._settings = value
        apply_verbosity(value.verbose, value.debug)
        if value.discovered:
            self._header = TxHeader(value.local_identity, value.remote_identity)
            self._discovery_state = DiscoveryState.KNOWN
            logger.debug("remote identity %s known" % value.remote_identity.hex())
            if self._discovered is not None:
                self._discovered.set()
        else:
            self._header = None
            self._discovery_state = DiscoveryState.UNKNOWN
            logger.debug("remote identity not known, discovery needed")
            if self._discovered is not None:
                self._discovered.clear()

    @property
    def discovery_state(self) -> DiscoveryState:
        return self._discovery_state

    @property
    def connection_state(self) -> ConnectionState:
        connection = self._connection
        return ConnectionState.DISCONNECTED if connection is None else connection.state

    @property
    def connected(self) -> bool:
        return self._connection is not None and self._connection.connected

    @property
    def connection(self) -> ConnectionManager:
        """ the current socket handle, or None before the first connect """
        return self._connection

    def _discovery_event(self) -> asyncio.Event:
        # created lazily, inside the running loop
        if self._discovered is None:
            self._discovered = asyncio.Event()
            if self._discovery_state is DiscoveryState.KNOWN:
                self._discovered.set()
        return self._discovered

    async def discover(self, timeout=None) -> Settings:
        """
        Finds the gateway and records its address and identity in the settings, which are returned.
        On failure the settings are left as they were and the error is raised.
        :raises DiscoveryFailure:
        """
        self._discovery_event()
        self._discovery_state = DiscoveryState.PROBING
        try:
            result = await discovery.discover(self._settings, self.decoder, timeout)
        except BaseException:
            # another discover() may have completed meanwhile
            self._discovery_state = DiscoveryState.KNOWN if self._settings.discovered else DiscoveryState.UNKNOWN
            raise
        self.settings = self._settings.with_remote(result.remote_address, result.remote_identity)
        logger.debug("settings updated from discovery")
        return self._settings

    async def transmit(self, operation: bytes, command: bytes):
        """
        Sends one message, connecting first if needed. When the device has not been
        discovered yet, waits until it is.
        :raises NotConnectedError: when the connection closed before it was established
        :raises ConnectionTimeout: when the connection was not established within connect_timeout
        :raises WriteError: when sending failed
        """
        if not self.connected:
            await self._discovery_event().wait()
            await self._ensure_connected()
        header = self._header
        if header is None:
            raise NotConnectedError("remote identity of the device is not known")
        await self._connection.write(header.frame(operation, command))

    async def _ensure_connected(self):
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        async with self._connect_lock:
            if self.connected:
                return
            connection = self._connection
            if connection is None or connection.destroyed:
                connection = self._replace_connection()
            await self._connect(connection)

    async def _connect(self, connection: ConnectionManager):
        outcome = connection.events.next_event(lambda e: isinstance(e, (ConnectedEvent, DisconnectedEvent)))
        settings = self._settings
        try:
            connection.connect(settings.remote_address, settings.port)
            event = await asyncio.wait_for(outcome, self.connect_timeout)
        except asyncio.TimeoutError as e:
            connection.destroy()
            raise ConnectionTimeout("not connected to %s:%d within %ss" % (settings.remote_address, settings.port,
                                                                          self.connect_timeout)) from e
        finally:
            outcome.cancel()
        if isinstance(event, DisconnectedEvent) or not connection.connected:
            raise NotConnectedError("bridge not connected to %s:%d" % (settings.remote_address, settings.port))

    def _new_connection(self) -> ConnectionManager:
        return ConnectionManager(self.idle_timeout, self.keepalive)

    def _replace_connection(self) -> ConnectionManager:
        old = self._connection
        if old is not None:
            old.events -= self.events.fire
        connection = self.connection_factory()
        connection.events += self.events.fire
        self._connection = connection
        logger.debug("created new socket handle")
        return connection

    async def close(self):
        """ closes the connection, if any. The bridge can still be used afterwards. """
        connection = self._connection
        if connection is not None:
            connection.destroy()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
