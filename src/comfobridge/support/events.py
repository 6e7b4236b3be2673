import asyncio
import logging

logger = logging.getLogger(__name__)


class EventSource(object):
    """
    Fans events out to the handlers registered with it. Each bridge and each
    connection owns its own instance; there is no global emitter.

    A handler that raises does not stop the remaining handlers: the exception
    is passed to exception_handler, which logs it by default.
    """

    def __init__(self):
        self._handlers = []

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def add(self, handler):
        self._handlers.append(handler)
        return self

    def remove(self, handler):
        if handler in self._handlers:
            self._handlers.remove(handler)
        return self

    def handlers(self):
        return tuple(self._handlers)

    def fire(self, *args, **kwargs):
        self._fire(*args, **kwargs)

    def fire_all(self, events):
        for e in events:
            self._fire(e)

    def exception_handler(self, handler, e):
        logger.exception("event handler %r failed: %s" % (handler, e))

    def _fire(self, *args, **kwargs):
        # iterate a copy, handlers may remove themselves
        for handler in tuple(self._handlers):
            try:
                handler(*args, **kwargs)
            except Exception as e:
                self.exception_handler(handler, e)

    def next_event(self, predicate, loop=None) -> asyncio.Future:
        """
        Returns a future that resolves with the first event accepted by predicate.
        The handler is removed once the future is done, including on cancellation.
        """
        loop = loop or asyncio.get_running_loop()
        future = loop.create_future()

        def handler(event, *args, **kwargs):
            if not future.done() and predicate(event):
                future.set_result(event)

        self.add(handler)
        future.add_done_callback(lambda f: self.remove(handler))
        return future
