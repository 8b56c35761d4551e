"""
Exception types raised by autoscaler components and adapters.
"""


class AutoscalerError(Exception):
    """Base class for autoscaler errors."""


class ConfigError(AutoscalerError):
    """Invalid configuration. Fatal at startup."""


class MetricsUnavailableError(AutoscalerError):
    """The metrics source could not be read."""


class RuntimeControlError(AutoscalerError):
    """The runtime could not report or change the replica count."""


class RoutingError(AutoscalerError):
    """The load balancer could not be updated."""


class NotificationError(AutoscalerError):
    """A notification could not be delivered."""


class StateStoreError(AutoscalerError):
    """Scaling state could not be loaded or saved."""


class CallTimeoutError(AutoscalerError):
    """
    An external call exceeded its timeout. pending is the future of a
    blocking call that is still running in its worker thread.
    """

    def __init__(self, message: str, pending=None):
        super().__init__(message)
        self.pending = pending
