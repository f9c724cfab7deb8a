class ForwardProxyError(Exception):
    """Base class for errors raised by the forward proxy."""


class ConfigurationError(ForwardProxyError):
    """Operator supplied values that cannot be turned into a usable configuration.

    Raised before the listener binds; the process must not start serving.
    """


class UriConstructionError(ForwardProxyError):
    """The outbound URI could not be built from the inbound request."""
