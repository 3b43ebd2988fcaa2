import threading


class ControlSignals:
    """
    Edge-triggered capture / clear requests.

    Each flag is a single slot: any number of requests before the next tick
    collapse into one, and reading a flag resets it. Requests may come from
    another thread (UI callbacks); the tick consumes them on the control thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._capture = False
        self._clear = False
        self._quit = False

    def request_capture(self) -> None:
        with self._lock:
            self._capture = True

    def request_clear(self) -> None:
        with self._lock:
            self._clear = True

    def request_quit(self) -> None:
        with self._lock:
            self._quit = True

    def consume_capture(self) -> bool:
        with self._lock:
            v, self._capture = self._capture, False
        return v

    def consume_clear(self) -> bool:
        with self._lock:
            v, self._clear = self._clear, False
        return v

    @property
    def should_quit(self) -> bool:
        return self._quit
