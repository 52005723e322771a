import threading


class SignalAlreadySetError(RuntimeError):
    pass


class OneShot:
    """
    Single-value handoff between two threads.

    The value is set exactly once and every wait() after that returns it.
    Setting it a second time raises SignalAlreadySetError.
    """

    def __init__(self, name="signal"):
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._value = None

    def set(self, value=None):
        with self._lock:
            if self._event.is_set():
                raise SignalAlreadySetError(f"{self.name} was already set")
            self._value = value
            self._event.set()

    def is_set(self):
        return self._event.is_set()

    def wait(self, timeout):
        """
        Block until the value is set or timeout seconds elapse.

        Returns (True, value) when set, (False, None) on expiry.
        """
        if not self._event.wait(timeout):
            return False, None
        return True, self._value
