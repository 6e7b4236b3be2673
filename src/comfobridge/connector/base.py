from enum import Enum

from comfobridge.support.mixins import CommonEqualityMixin


class ConnectorError(Exception):
    """ Indicates an error condition with the bridge or its connection. """


class DiscoveryFailure(ConnectorError):
    """ The UDP discovery probe could not be bound, sent, answered or decoded. """


class ConnectionTimeout(ConnectorError):
    """ No activity within the idle window, or the connection was not made in time. """

    def __init__(self, message='timeout', reason='timeout'):
        super().__init__(message)
        self.reason = reason


class TransportError(ConnectorError):
    """ An OS-level socket error. The underlying exception is the cause. """


class NotConnectedError(ConnectorError):
    """ A connection is required but could not be established. """


class WriteError(ConnectorError):
    """ Writing an outbound frame failed. """


class ConnectionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    CLOSING = 'closing'


class ConnectorEvent(CommonEqualityMixin):
    """ base class for connection events. """
    def __init__(self, connector):
        self.connector = connector


class ConnectedEvent(ConnectorEvent):
    """ The connection to the remote device was established. """


class DisconnectedEvent(ConnectorEvent):
    """ The connection was closed and its socket handle destroyed. """
    def __init__(self, connector, had_error=False):
        super().__init__(connector)
        self.had_error = had_error


class ErrorEvent(ConnectorEvent):
    """ A transport error or timeout was detected. The connection is closed afterwards. """
    def __init__(self, connector, error: ConnectorError):
        super().__init__(connector)
        self.error = error

    @property
    def reason(self):
        """ 'timeout' for idle timeouts, otherwise the error itself. """
        return getattr(self.error, 'reason', self.error)


class ReceivedEvent(ConnectorEvent):
    """ One complete inbound frame. """
    def __init__(self, connector, frame):
        super().__init__(connector)
        self.frame = frame

    @property
    def time(self):
        return self.frame.received_at

    @property
    def data(self):
        return self.frame.payload

    @property
    def kind(self):
        return self.frame.kind

    @property
    def msg(self):
        return self.frame.parsed
