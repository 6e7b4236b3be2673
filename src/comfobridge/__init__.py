"""
Bridge to a ComfoConnect LAN C ventilation gateway.

- Settings: the local identity and what is known about the gateway (address, identity, port).
  Immutable; discovery produces a new value.
- Discovery: a UDP probe broadcast (or sent to a configured address) on the gateway port.
  The first decodable reply gives the gateway address and identity.
- Framing: outbound messages are a fixed 38 byte header (length, local identity, remote identity,
  operation length) followed by the operation and command. Inbound data is split into
  length-prefixed frames, reassembled across reads.
- ConnectionManager: one TCP connection. An idle timer closes the connection when nothing is
  sent or received within the idle window. A closed manager is never reused.
- Bridge: ties these together. transmit() waits for discovery, connects on demand, then writes.
  Connection events are re-fired on Bridge.events.

Everything runs on one asyncio event loop. Nothing here is thread safe.

Logging goes to 'comfobridge.*' loggers; raw traffic is dumped to 'comfobridge.raw' when
debug is enabled in the settings.
"""

from comfobridge.bridge import Bridge
from comfobridge.conduit.discovery import DiscoveryState, DiscoveryResult
from comfobridge.connector.base import ConnectorError, DiscoveryFailure, ConnectionTimeout, TransportError, \
    NotConnectedError, WriteError, ConnectionState, ConnectedEvent, DisconnectedEvent, ErrorEvent, ReceivedEvent
from comfobridge.settings import Settings

__version__ = '0.1.0'
