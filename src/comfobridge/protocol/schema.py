"""
Protobuf schema for the discovery exchange.

The message classes are built at import time from a descriptor equivalent to:

    package zehnder;

    message SearchGatewayRequest {}

    message SearchGatewayResponse {
        enum GatewayType { lanc = 0; season = 1; }
        optional string ipaddress = 1;
        optional bytes uuid = 2;
        optional uint32 version = 3;
        optional GatewayType type = 4 [default = lanc];
    }

    message DiscoveryOperation {
        optional SearchGatewayRequest searchGatewayRequest = 1;
        optional SearchGatewayResponse searchGatewayResponse = 2;
    }

Payloads of the TCP frames are not decoded here.
"""
import logging
from typing import NamedTuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from comfobridge.protocol.framing import IDENTITY_LENGTH

logger = logging.getLogger(__name__)

PACKAGE = 'zehnder'

_Field = descriptor_pb2.FieldDescriptorProto


class SchemaError(ValueError):
    """ The bytes are not a message of the expected type. """


def _add_field(message, name, number, field_type, type_name=None, default=None):
    field = message.field.add(name=name, number=number, type=field_type, label=_Field.LABEL_OPTIONAL)
    if type_name:
        field.type_name = '.%s.%s' % (PACKAGE, type_name)
    if default is not None:
        field.default_value = default
    return field


def _discovery_file():
    proto = descriptor_pb2.FileDescriptorProto(name='comfobridge/discovery.proto', package=PACKAGE,
                                               syntax='proto2')
    proto.message_type.add(name='SearchGatewayRequest')

    response = proto.message_type.add(name='SearchGatewayResponse')
    gateway_type = response.enum_type.add(name='GatewayType')
    gateway_type.value.add(name='lanc', number=0)
    gateway_type.value.add(name='season', number=1)
    _add_field(response, 'ipaddress', 1, _Field.TYPE_STRING)
    _add_field(response, 'uuid', 2, _Field.TYPE_BYTES)
    _add_field(response, 'version', 3, _Field.TYPE_UINT32)
    _add_field(response, 'type', 4, _Field.TYPE_ENUM, 'SearchGatewayResponse.GatewayType', 'lanc')

    operation = proto.message_type.add(name='DiscoveryOperation')
    _add_field(operation, 'searchGatewayRequest', 1, _Field.TYPE_MESSAGE, 'SearchGatewayRequest')
    _add_field(operation, 'searchGatewayResponse', 2, _Field.TYPE_MESSAGE, 'SearchGatewayResponse')
    return proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_discovery_file().SerializeToString())


def message_class(name):
    """ retrieves the generated message class for a message in the discovery schema """
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName('%s.%s' % (PACKAGE, name)))


DiscoveryOperation = message_class('DiscoveryOperation')
SearchGatewayResponse = message_class('SearchGatewayResponse')
_gateway_types = SearchGatewayResponse.DESCRIPTOR.enum_types_by_name['GatewayType']


class GatewayResponse(NamedTuple):
    """ what a gateway reports about itself in reply to a discovery probe """
    address: str
    identity: bytes
    version: int = 0
    gateway_type: str = 'lanc'


def encode_probe() -> bytes:
    """
    The discovery probe: a DiscoveryOperation holding an empty search request.
    """
    operation = DiscoveryOperation()
    operation.searchGatewayRequest.SetInParent()
    return operation.SerializeToString()


def encode_response(response: GatewayResponse) -> bytes:
    """ encodes a gateway's reply, as sent by the device or a stand-in for it """
    operation = DiscoveryOperation()
    reply = operation.searchGatewayResponse
    reply.ipaddress = response.address
    reply.uuid = response.identity
    reply.version = response.version
    reply.type = _gateway_types.values_by_name[response.gateway_type].number
    return operation.SerializeToString()


class DiscoveryDecoder:
    """ Decodes discovery replies into GatewayResponse values. """

    def decode(self, data: bytes) -> GatewayResponse:
        try:
            operation = DiscoveryOperation.FromString(data)
        except DecodeError as e:
            raise SchemaError("not a discovery operation: %s" % data.hex()) from e
        if not operation.HasField('searchGatewayResponse'):
            raise SchemaError("discovery operation carries no gateway response")
        reply = operation.searchGatewayResponse
        if not reply.ipaddress:
            raise SchemaError("gateway response has no address")
        if len(reply.uuid) != IDENTITY_LENGTH:
            raise SchemaError("gateway identity must be %d bytes, got %d" % (IDENTITY_LENGTH, len(reply.uuid)))
        gateway_type = _gateway_types.values_by_number[reply.type].name
        logger.debug("gateway %s at %s, version %d (%s)" % (reply.uuid.hex(), reply.ipaddress, reply.version,
                                                          gateway_type))
        return GatewayResponse(reply.ipaddress, bytes(reply.uuid), reply.version, gateway_type)
