import threading
import logging
import queue


class CloseMonitor(threading.Thread):
    """
    Watches a consumer connection's close notification.

    The owner of the connection calls notify() once when the connection
    closes, cleanly (reason None) or not. The monitor logs it, keeps the
    reason and exits, so it lives exactly as long as the connection.
    """

    def __init__(self, name="Consumer-CloseMonitor"):
        super().__init__(name=name, daemon=True)
        self._notifications = queue.Queue(maxsize=1)
        self.last_reason = None
        self.logger = logging.getLogger(__name__)

    def notify(self, reason=None):
        try:
            self._notifications.put_nowait(reason)
        except queue.Full:
            self.logger.debug(
                "action: close_notification | result: ignored | msg: already notified"
            )

    def run(self):
        self.logger.debug("action: close_monitor_start | result: success")

        # Block until the connection reports its closure
        reason = self._notifications.get(block=True)
        self.last_reason = reason

        if reason is None:
            self.logger.info(
                "action: connection_closed | result: success | msg: closed by client"
            )
        else:
            self.logger.warning(
                "action: connection_closed | result: fail | reason: %s", reason
            )
