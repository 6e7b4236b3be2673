from comfobridge.protocol.framing import check_identity
from comfobridge.support.mixins import CommonEqualityMixin, StringerMixin

DEFAULT_PORT = 56747
DEFAULT_MULTICAST = '255.255.255.255'


class Settings(CommonEqualityMixin, StringerMixin):
    """
    Describes the local bridge and the remote device.

    Settings are immutable. Discovery results and other changes are applied
    by building a new value with replace() or with_remote().

    :param local_identity: the 16 byte identity of this bridge, as bytes or hex.
    :param remote_identity: the 16 byte identity of the device, once known.
    :param remote_address: the device address. It may be configured without an
        identity, in which case discovery probes that address directly.
    :param port: the UDP and TCP port of the device.
    :param multicast_group: where discovery probes are sent when the device address is unknown.
    :param verbose: log connection details.
    :param debug: log raw traffic as hex.
    """
    def __init__(self, local_identity, remote_identity=None, remote_address=None, port=DEFAULT_PORT,
                 multicast_group=DEFAULT_MULTICAST, verbose=False, debug=False):
        self._local_identity = check_identity(local_identity, 'local identity')
        self._remote_identity = None if remote_identity is None \
            else check_identity(remote_identity, 'remote identity')
        self._remote_address = remote_address or None
        if self._remote_identity is not None and self._remote_address is None:
            raise ValueError("a remote identity requires a remote address")
        self._port = int(port)
        self._multicast_group = multicast_group
        self._verbose = bool(verbose)
        self._debug = bool(debug)

    def __setattr__(self, key, value):
        if not key.startswith('_') or key in self.__dict__:
            raise AttributeError("Settings are immutable, use replace()")
        super().__setattr__(key, value)

    def __repr__(self):
        return str(self)

    @property
    def local_identity(self) -> bytes:
        return self._local_identity

    @property
    def remote_identity(self) -> bytes:
        return self._remote_identity

    @property
    def remote_address(self) -> str:
        return self._remote_address

    @property
    def port(self) -> int:
        return self._port

    @property
    def multicast_group(self) -> str:
        return self._multicast_group

    @property
    def verbose(self) -> bool:
        return self._verbose

    @property
    def debug(self) -> bool:
        return self._debug

    @property
    def discovered(self) -> bool:
        """ True when both the remote address and identity are known """
        return self._remote_identity is not None

    def replace(self, **changes):
        """ builds a copy of these settings with the given attributes changed """
        values = {key.lstrip('_'): value for key, value in self.__dict__.items()}
        unknown = set(changes) - set(values)
        if unknown:
            raise TypeError("unknown settings: %s" % ", ".join(sorted(unknown)))
        values.update(changes)
        return Settings(**values)

    def with_remote(self, address, identity):
        """ the settings after the device was found at address with the given identity """
        return self.replace(remote_address=address, remote_identity=identity)
