import logging
import os
import platform
import re
import uuid

from configobj import ConfigObj, ConfigObjError, flatten_errors
from validate import Validator

from printlink.errors import ConfigurationError
from printlink.protocol.encoder import DEFAULT_CHARSET, check_charset

logger = logging.getLogger(__name__)

# The default extension for configuration files
config_extension = '.cfg'

# the packaged configuration files live alongside this module
package_directory = os.path.dirname(os.path.abspath(__file__))

DEFAULT_CONFIG_NAME = 'printlink'
LINK_SECTION = 'link'

DEFAULT_TARGET_NAME = 'Brother QL-820NWBC'
RAW_PRINT_PORT = 9100
DEFAULT_CONNECT_TIMEOUT_MS = 5000
DEFAULT_SCAN_DURATION_MS = 10000
DEFAULT_SEND_TIMEOUT_MS = 10000

_bluetooth_base_uuid = '-0000-1000-8000-00805f9b34fb'
_short_uuid = re.compile('[0-9a-f]{4}|[0-9a-f]{8}')


def config_filename(name, directory, flavor=None):
    """
    Determines the location of a config file, optionally specialized by a flavor.
    >>> config_filename('printlink', '/etc', 'schema').replace(os.sep, '/')
    '/etc/printlink.schema.cfg'
    """
    configname = name if not flavor else name + '.' + flavor
    return os.path.join(directory, configname + config_extension)


def load_config_file(file, must_exist=True) -> ConfigObj:
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :return: The ConfigObj instance for the file.
    """
    try:
        return ConfigObj(file, interpolation='Template', file_error=must_exist) \
            if must_exist or os.path.exists(file) else ConfigObj()
    except ConfigObjError as e:
        raise ConfigurationError('%s at %s' % (e, file)) from e


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def load_config(name=DEFAULT_CONFIG_NAME, directory=None, user_directory='~') -> ConfigObj:
    """
    Loads the layered configuration for name. Later layers override earlier ones:
    - the packaged defaults (<name>.default.cfg next to this module)
    - the platform specialization (<name>.<os>.cfg)
    - the user override (<name>.cfg in the user's home directory)
    - the local configuration (<name>.cfg in directory)
    The result is validated against the packaged <name>.schema.cfg, which also fills in defaults.
    :param directory: where to look for the platform and local files. Defaults to the package directory.
    """
    directory = directory or package_directory
    layers = [
        config_filename(name, package_directory, 'default'),
        config_filename(name, directory, os_name()),
        config_filename(name, os.path.expanduser(user_directory)),
    ]
    local = config_filename(name, directory)
    if local not in layers:
        layers.append(local)

    try:
        config = ConfigObj(configspec=config_filename(name, package_directory, 'schema'), file_error=True)
    except (ConfigObjError, IOError) as e:
        raise ConfigurationError('cannot load schema for %s: %s' % (name, e)) from e
    for file in layers:
        logger.debug("loading configuration layer %s" % file)
        config.merge(load_config_file(file, must_exist=False))

    result = config.validate(Validator(), preserve_errors=True)
    if result is not True:
        problems = []
        for sections, key, error in flatten_errors(config, result):
            location = '.'.join(sections + [key] if key else sections)
            problems.append('%s: %s' % (location, error or 'missing'))
        raise ConfigurationError("the config %s failed validation: %s" % (name, '; '.join(problems)))
    return config


def normalize_uuid(value, name='uuid'):
    """
    Validates a bluetooth service or characteristic identifier, expanding 16 and 32 bit forms to the
    full 128 bit form.
    >>> normalize_uuid('FFE1')
    '0000ffe1-0000-1000-8000-00805f9b34fb'
    >>> normalize_uuid('E7810A71-73AE-499D-8C15-FAA9AEF0C3F2')
    'e7810a71-73ae-499d-8c15-faa9aef0c3f2'
    """
    if value is None or not str(value).strip():
        raise ConfigurationError('%s is not configured' % name)
    text = str(value).strip().lower()
    if _short_uuid.fullmatch(text):
        text = text.rjust(8, '0') + _bluetooth_base_uuid
    try:
        return str(uuid.UUID(text))
    except ValueError as e:
        raise ConfigurationError('%s %r is not a valid uuid' % (name, value)) from e


def _positive_ms(value, name):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError('%s must be a positive number of milliseconds, not %r' % (name, value))
    return value


def _port(value, name='port'):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value < 65536:
        raise ConfigurationError('%s must be between 1 and 65535, not %r' % (name, value))
    return value


class LinkConfig:
    """
    The validated options for a printer link. Values are checked when the config is constructed,
    so an invalid identifier or port fails here rather than part way through connecting.

    The bluetooth identifiers and the host are optional here, since each is only needed by one transport.
    The bluetooth transport checks its identifiers when connecting, so scanning works without them.
    """

    def __init__(self, target_name=DEFAULT_TARGET_NAME, service_uuid=None, characteristic_uuid=None,
                 host=None, port=RAW_PRINT_PORT, connect_timeout_ms=DEFAULT_CONNECT_TIMEOUT_MS,
                 scan_duration_ms=DEFAULT_SCAN_DURATION_MS, send_timeout_ms=DEFAULT_SEND_TIMEOUT_MS,
                 charset=DEFAULT_CHARSET):
        if target_name is not None and not isinstance(target_name, str):
            raise ConfigurationError('target_name must be text, not %r' % (target_name,))
        self.target_name = target_name or None
        self.service_uuid = normalize_uuid(service_uuid, 'service_uuid') if service_uuid else None
        self.characteristic_uuid = normalize_uuid(characteristic_uuid, 'characteristic_uuid') \
            if characteristic_uuid else None
        if host is not None and (not isinstance(host, str) or not host.strip()):
            raise ConfigurationError('host must be a host name or address, not %r' % (host,))
        self.host = host.strip() if host else None
        self.port = _port(port)
        self.connect_timeout_ms = _positive_ms(connect_timeout_ms, 'connect_timeout_ms')
        self.scan_duration_ms = _positive_ms(scan_duration_ms, 'scan_duration_ms')
        self.send_timeout_ms = _positive_ms(send_timeout_ms, 'send_timeout_ms')
        self.charset = check_charset(charset)

    @property
    def connect_timeout(self) -> float:
        """ the connect timeout in seconds """
        return self.connect_timeout_ms / 1000.0

    @property
    def scan_duration(self) -> float:
        return self.scan_duration_ms / 1000.0

    @property
    def send_timeout(self) -> float:
        return self.send_timeout_ms / 1000.0

    def require_host(self):
        if not self.host:
            raise ConfigurationError('host is not configured')
        return self

    def replace(self, **changes):
        """ a copy of this config with the given options changed, validated again. """
        options = self.as_dict()
        options.update(changes)
        return LinkConfig(**options)

    def as_dict(self):
        return dict(target_name=self.target_name, service_uuid=self.service_uuid,
                    characteristic_uuid=self.characteristic_uuid, host=self.host, port=self.port,
                    connect_timeout_ms=self.connect_timeout_ms, scan_duration_ms=self.scan_duration_ms,
                    send_timeout_ms=self.send_timeout_ms, charset=self.charset)

    @classmethod
    def from_section(cls, section):
        """ builds the config from the [link] section of a validated configuration. """
        known = cls().as_dict()
        return cls(**{k: v for k, v in section.items() if k in known})

    @classmethod
    def load(cls, name=DEFAULT_CONFIG_NAME, directory=None, user_directory='~'):
        config = load_config(name, directory, user_directory)
        return cls.from_section(config[LINK_SECTION])

    def __eq__(self, other):
        return isinstance(other, LinkConfig) and other.as_dict() == self.as_dict()

    def __repr__(self):
        return 'LinkConfig(%s)' % ', '.join('%s=%r' % kv for kv in sorted(self.as_dict().items()))
