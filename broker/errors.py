from enum import Enum


class Phase(str, Enum):
    """Step of a setup, publish or shutdown sequence an error belongs to"""

    DIAL = "dial"
    CHANNEL_OPEN = "channel-open"
    EXCHANGE_DECLARE = "exchange-declare"
    QUEUE_DECLARE = "queue-declare"
    QUEUE_BIND = "queue-bind"
    QOS = "qos"
    CONSUME_START = "consume-start"
    CONFIRM_MODE_ENABLE = "confirm-mode-enable"
    PUBLISH = "publish"
    CANCEL = "cancel"
    CONNECTION_CLOSE = "connection-close"
    ACK = "ack"
    SETUP = "setup"
    SHUTDOWN = "shutdown"


class BrokerError(Exception):
    """Base error. Keeps the original broker error in ``cause``."""

    phase = None

    def __init__(self, cause=None, phase=None):
        if phase is not None:
            self.phase = Phase(phase)
        self.cause = cause
        super().__init__(self._describe())

    def _describe(self):
        tag = self.phase.value if self.phase else "broker"
        if self.cause is None:
            return tag
        return f"{tag}: {self.cause}"


class SetupError(BrokerError):
    pass


class DialError(SetupError):
    phase = Phase.DIAL


class ChannelOpenError(SetupError):
    phase = Phase.CHANNEL_OPEN


class ExchangeDeclareError(SetupError):
    phase = Phase.EXCHANGE_DECLARE


class QueueDeclareError(SetupError):
    phase = Phase.QUEUE_DECLARE


class QueueBindError(SetupError):
    phase = Phase.QUEUE_BIND


class QosError(SetupError):
    phase = Phase.QOS


class ConsumeStartError(SetupError):
    phase = Phase.CONSUME_START


class ConfirmModeError(SetupError):
    phase = Phase.CONFIRM_MODE_ENABLE


class PublishError(BrokerError):
    phase = Phase.PUBLISH


class AckError(BrokerError):
    phase = Phase.ACK


class ShutdownError(BrokerError):
    """Raised when shutdown fails. ``causes`` holds every failed step."""

    phase = Phase.SHUTDOWN

    def __init__(self, cause=None, phase=None, causes=None):
        self.causes = list(causes) if causes else []
        if cause is None and self.causes:
            cause = "; ".join(str(c) for c in self.causes)
        super().__init__(cause, phase)


class CancelError(ShutdownError):
    phase = Phase.CANCEL


class ConnectionCloseError(ShutdownError):
    phase = Phase.CONNECTION_CLOSE


class BrokerTimeoutError(BrokerError):
    """A blocking wait expired. ``phase`` names the wait."""

    def __init__(self, phase, timeout):
        self.timeout = timeout
        super().__init__(f"timed out after {timeout}s", phase)


class AlreadyClosedError(BrokerError):
    phase = Phase.SHUTDOWN

    def __init__(self, cause="consumer already closed"):
        super().__init__(cause)


class InvalidStateError(BrokerError):
    def __init__(self, operation, state):
        self.operation = operation
        self.state = state
        super().__init__(f"cannot {operation} while {state.value}")


class DrainError(BrokerError):
    """The caller reported a failure through the completion signal"""

    phase = Phase.SHUTDOWN
