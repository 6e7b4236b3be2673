"""
    Discovery of the ventilation unit's gateway on the local network.

    A UDP endpoint is bound to the gateway port and a probe is sent, either to the
    broadcast/multicast group or, when the gateway address is already configured,
    straight to that address. The first reply names the gateway address and identity.
    The endpoint is then closed, and discovery completes once the close is done.
"""

import asyncio
import ipaddress
import logging
import socket
import struct
from enum import Enum

from comfobridge.connector.base import DiscoveryFailure
from comfobridge.protocol.schema import DiscoveryDecoder, GatewayResponse, SchemaError, encode_probe
from comfobridge.settings import Settings
from comfobridge.support.logs import raw_logger
from comfobridge.support.mixins import CommonEqualityMixin, StringerMixin

logger = logging.getLogger(__name__)

BIND_ADDRESS = '0.0.0.0'
PROBE = encode_probe()


class DiscoveryState(Enum):
    UNKNOWN = 'unknown'
    PROBING = 'probing'
    KNOWN = 'known'


class DiscoveryResult(CommonEqualityMixin, StringerMixin):
    """ What discovery learned, together with the local identity and port it was made with. """
    def __init__(self, local_identity, remote_identity, remote_address, port, gateway: GatewayResponse=None):
        self.local_identity = local_identity
        self.remote_identity = remote_identity
        self.remote_address = remote_address
        self.port = port
        self.gateway = gateway

    @classmethod
    def from_response(cls, settings: Settings, response: GatewayResponse):
        return cls(settings.local_identity, response.identity, response.address, settings.port, response)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """
    Sends one probe and waits for one reply.

    `done` resolves with the GatewayResponse, or fails with DiscoveryFailure, only from
    connection_lost(), that is after the endpoint has been closed.
    `closed` resolves once the endpoint is closed, whatever the outcome.
    """

    def __init__(self, settings: Settings, decoder: DiscoveryDecoder=None, loop=None):
        self.settings = settings
        self.decoder = decoder or DiscoveryDecoder()
        loop = loop or asyncio.get_running_loop()
        self.done = loop.create_future()
        self.closed = loop.create_future()
        self.transport = None
        self._response = None
        self._error = None

    @property
    def destination(self):
        settings = self.settings
        return settings.remote_address or settings.multicast_group, settings.port

    def connection_made(self, transport):
        self.transport = transport
        try:
            if self.settings.remote_address is None:
                self._enable_broadcast(transport.get_extra_info('socket'))
            raw_logger.debug(" -> TX (UDP) : %s" % PROBE.hex())
            logger.debug("sending discovery probe to %s:%d" % self.destination)
            transport.sendto(PROBE, self.destination)
        except OSError as e:
            self._fail(DiscoveryFailure("unable to send discovery probe to %s:%d: %s"
                                        % (self.destination + (e,))), e)

    def _enable_broadcast(self, sock):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        group = self.settings.multicast_group
        try:
            multicast = ipaddress.ip_address(group).is_multicast
        except ValueError:
            multicast = False
        if multicast:
            membership = struct.pack('4s4s', socket.inet_aton(group), socket.inet_aton(BIND_ADDRESS))
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
            logger.debug("joined multicast group %s" % group)

    def datagram_received(self, data, addr):
        if self._response is not None or self._error is not None:
            return
        raw_logger.debug(" <- RX (UDP) : %s (%s:%d)" % ((data.hex(),) + tuple(addr[:2])))
        if data == PROBE:
            # a broadcast probe, possibly our own, looped back
            return
        try:
            self._response = self.decoder.decode(data)
        except SchemaError as e:
            self._fail(DiscoveryFailure("invalid discovery reply from %s: %s" % (addr[0], e)), e)
            return
        self.transport.close()

    def error_received(self, exc):
        self._fail(DiscoveryFailure("discovery failed: %s" % exc), exc)

    def _fail(self, error, cause):
        if self._error is None and self._response is None:
            error.__cause__ = cause
            self._error = error
        if self.transport is not None:
            self.transport.close()

    def connection_lost(self, exc):
        if not self.closed.done():
            self.closed.set_result(None)
        if self.done.done():
            return
        if self._response is not None:
            self.done.set_result(self._response)
        elif self._error is not None:
            self.done.set_exception(self._error)
        else:
            error = DiscoveryFailure("discovery endpoint closed before a reply arrived")
            error.__cause__ = exc
            self.done.set_exception(error)


def bind_socket(local_addr) -> socket.socket:
    """
    Binds a UDP socket to the given address, sharing the port with other local listeners.
    :raises DiscoveryFailure: when the address cannot be bound
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(local_addr)
    except OSError as e:
        sock.close()
        raise DiscoveryFailure("unable to bind UDP %s:%d: %s" % (local_addr + (e,))) from e
    sock.setblocking(False)
    return sock


async def discover(settings: Settings, decoder: DiscoveryDecoder=None, timeout=None, local_addr=None) \
        -> DiscoveryResult:
    """
    Runs one discovery exchange. There is no retry; call again to retry.

    :param settings: the port, multicast group and optional gateway address to probe.
    :param decoder: decodes the reply.
    :param timeout: seconds to wait for a reply, or None to wait until cancelled.
    :param local_addr: the address to bind, by default all interfaces on the gateway port.
    :raises DiscoveryFailure: when the endpoint cannot be bound, the probe cannot be sent,
        the reply is invalid or does not arrive in time.
    """
    loop = asyncio.get_running_loop()
    local_addr = local_addr or (BIND_ADDRESS, settings.port)
    protocol = DiscoveryProtocol(settings, decoder, loop)
    sock = bind_socket(local_addr)
    try:
        transport, _ = await loop.create_datagram_endpoint(lambda: protocol, sock=sock)
    except OSError as e:
        sock.close()
        raise DiscoveryFailure("unable to open UDP endpoint on %s:%d: %s" % (local_addr + (e,))) from e
    try:
        response = await asyncio.wait_for(protocol.done, timeout)
    except asyncio.TimeoutError as e:
        # release the port before reporting, so a retry can bind it
        transport.close()
        await protocol.closed
        raise DiscoveryFailure("no reply to discovery probe within %ss" % timeout) from e
    finally:
        transport.close()
    logger.info("discovered gateway %s at %s" % (response.identity.hex(), response.address))
    return DiscoveryResult.from_response(settings, response)
