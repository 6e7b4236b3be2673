import threading


def quote(val):
    return "'" + str(val) + "'" if val is not None else "None"


def hexlify(val):
    """
    >>> hexlify(b'\\x0a\\x00')
    '0a00'
    >>> hexlify(None)
    'None'
    """
    return val.hex() if isinstance(val, (bytes, bytearray)) else str(val)


class StringerMixin:
    """ Appends the public attributes of a value object to its string form.
        Byte values are shown as hex, so identity tokens stay readable in logs.
    """

    def __str__(self):
        return type(self).__name__ + self._sorted_items_string()

    def _public_items(self):
        return sorted((key.lstrip('_'), val) for key, val in self.__dict__.items())

    def _sorted_items_string(self):
        return "{" + ", ".join("'%s': %s" % (key, "None" if val is None else quote(hexlify(val)))
                               for key, val in self._public_items()) + "}"


class CommonEqualityMixin(object):
    """  a deep equals comparison for value objects. """
    local = threading.local()

    def __eq__(self, other):
        if not hasattr(CommonEqualityMixin.local, 'seen'):
            CommonEqualityMixin.local.seen = []
        seen = CommonEqualityMixin.local.seen
        return hasattr(other, '__dict__') and isinstance(other, self.__class__) \
            and self._dicts_equal(other, seen)

    def _dicts_equal(self, other, seen):
        p = (id(self), id(other))
        if p in seen:
            raise ValueError("recursive comparison of %s" % type(self).__name__)
        try:
            seen.append(p)
            return self.__dict__ == other.__dict__
        finally:
            seen.pop()

    def __ne__(self, other):
        return not self.__eq__(other)

    __hash__ = None
