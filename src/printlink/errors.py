"""
The errors reported by the printer link. Every failed operation raises exactly one of these.
"""


class LinkError(Exception):
    """ base class for errors from the printer link. """
    kind = 'link'

    def __init__(self, message=None):
        super().__init__(message or self.__doc__.strip())
        self.message = str(self)


class ConfigurationError(LinkError, ValueError):
    """ A configuration value is missing or invalid. """
    kind = 'configuration'


class DiscoveryPermissionError(LinkError):
    """ Permission to scan for printers was not granted. """
    kind = 'permission'


class DiscoveryError(LinkError):
    """ The radio or adapter needed for discovery is not available. """
    kind = 'discovery'


class BusyError(LinkError):
    """ Another operation is in progress on the link. """
    kind = 'busy'


class OperationCancelledError(LinkError):
    """ The operation was cancelled before it completed. """
    kind = 'cancelled'


class EncodingError(LinkError, ValueError):
    """ The content cannot be encoded in the printer's character set. """
    kind = 'encoding'


class ConnectError(LinkError):
    """ The connection to the printer could not be established. """
    kind = 'io'


class ConnectTimeoutError(ConnectError):
    """ The printer did not accept the connection in time. """
    kind = 'timeout'


class ConnectRefusedError(ConnectError):
    """ The printer refused the connection. """
    kind = 'refused'


class ConnectIoError(ConnectError):
    """ An I/O error occurred connecting to the printer. """
    kind = 'io'


class SendError(LinkError):
    """ The print job could not be sent. """
    kind = 'io'


class SendTimeoutError(SendError):
    """ The printer did not accept the print job in time. """
    kind = 'timeout'


class SendIoError(SendError):
    """ An I/O error occurred sending to the printer. """
    kind = 'io'


class NotConnectedError(SendError):
    """ No printer is connected. """
    kind = 'not_connected'


class LinkLostError(SendIoError):
    """ The printer closed the connection. """
    kind = 'closed'


class DisconnectError(LinkError):
    """ The connection to the printer was not closed cleanly. """
    kind = 'disconnect'
