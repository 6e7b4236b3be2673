"""
Framing for the TCP byte stream.

Inbound, every frame is a 4-byte big-endian length L followed by L bytes.
Outbound, every message starts with a 38 byte header:

    offset  size
    0       4     total length of what follows (BE), 16 + 16 + 2 + len(op) + len(cmd)
    4       16    local identity
    20      16    remote identity
    36      2     operation length (BE)

followed by the operation bytes and then the command bytes.
"""
import logging
import struct
from datetime import datetime
from typing import Iterator, NamedTuple, Optional

logger = logging.getLogger(__name__)

LENGTH_PREFIX = struct.Struct('>I')
OPERATION_LENGTH = struct.Struct('>H')

IDENTITY_LENGTH = 16
HEADER_LENGTH = 38
LOCAL_IDENTITY_OFFSET = 4
REMOTE_IDENTITY_OFFSET = LOCAL_IDENTITY_OFFSET + IDENTITY_LENGTH
OPERATION_LENGTH_OFFSET = REMOTE_IDENTITY_OFFSET + IDENTITY_LENGTH


class FramingError(ValueError):
    """ The byte stream cannot be split into frames. """


class Frame(NamedTuple):
    """ One length-prefixed unit of the inbound stream. payload includes the prefix. """
    length: int
    payload: bytes
    received_at: datetime
    kind: int = -1
    parsed: object = None


class FrameDecoder:
    """
    Splits the inbound byte stream into frames.

    Bytes are appended to a reassembly buffer, so a frame may arrive in any number
    of chunks, and a chunk may hold any number of frames.
    """

    def __init__(self, max_length: Optional[int]=None, clock=datetime.now):
        """
        :param max_length: the largest declared frame length accepted, or None for no limit.
        :param clock: provides the receive timestamp of each frame.
        """
        self.max_length = max_length
        self.clock = clock
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """ the number of bytes buffered that do not yet form a complete frame """
        return len(self._buffer)

    def reset(self):
        self._buffer.clear()

    def feed(self, chunk: bytes) -> Iterator[Frame]:
        """
        Appends a chunk to the buffer and returns an iterator over the frames now complete.
        Frames are yielded in stream order and removed from the buffer as they are yielded.
        """
        self._buffer.extend(chunk)
        return self._frames()

    def _frames(self):
        buffer = self._buffer
        while len(buffer) >= LENGTH_PREFIX.size:
            length, = LENGTH_PREFIX.unpack_from(buffer, 0)
            if self.max_length is not None and length > self.max_length:
                raise FramingError("declared frame length %d exceeds %d" % (length, self.max_length))
            end = LENGTH_PREFIX.size + length
            if len(buffer) < end:
                break
            payload = bytes(buffer[:end])
            del buffer[:end]
            yield Frame(length, payload, self.clock())


def check_identity(identity, name='identity') -> bytes:
    """
    Validates an identity token, accepting bytes or a hex string.

    >>> check_identity('000102030405060708090a0b0c0d0e0f').hex()
    '000102030405060708090a0b0c0d0e0f'
    """
    if isinstance(identity, str):
        try:
            identity = bytes.fromhex(identity)
        except ValueError as e:
            raise ValueError("%s is not a hex string: %r" % (name, identity)) from e
    identity = bytes(identity)
    if len(identity) != IDENTITY_LENGTH:
        raise ValueError("%s must be %d bytes, got %d" % (name, IDENTITY_LENGTH, len(identity)))
    return identity


class TxHeader:
    """
    The fixed part of every outbound message. The identities never change for the
    lifetime of an instance; each call to frame() builds a new buffer, so concurrent
    senders do not share mutable state.
    """

    def __init__(self, local_identity: bytes, remote_identity: bytes):
        self.local_identity = check_identity(local_identity, 'local identity')
        self.remote_identity = check_identity(remote_identity, 'remote identity')

    def frame(self, operation: bytes, command: bytes) -> bytes:
        """ builds the complete outbound message for the given operation and command """
        buffer = bytearray(HEADER_LENGTH)
        buffer[LOCAL_IDENTITY_OFFSET:REMOTE_IDENTITY_OFFSET] = self.local_identity
        buffer[REMOTE_IDENTITY_OFFSET:OPERATION_LENGTH_OFFSET] = self.remote_identity
        OPERATION_LENGTH.pack_into(buffer, OPERATION_LENGTH_OFFSET, len(operation))
        LENGTH_PREFIX.pack_into(buffer, 0, HEADER_LENGTH - LENGTH_PREFIX.size + len(operation) + len(command))
        buffer += operation
        buffer += command
        return bytes(buffer)
