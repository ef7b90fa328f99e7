"""
Encodes print content as the printer's command stream:

    ESC @           initialize the printer (2 bytes)
    content         the text, in a single byte character set, ending with a line feed
    FF              print and finish the label (1 byte)
"""
import codecs
import logging

from printlink.errors import ConfigurationError, EncodingError

logger = logging.getLogger(__name__)

INIT = b'\x1b\x40'
FINISH = b'\x0c'
LINE_END = '\n'

DEFAULT_CHARSET = 'ascii'

# characters a single byte charset must not expand to more than one byte
_wide_probe = 'éü€Ж'


def check_charset(charset):
    """
    Verifies the charset is a known single byte codec that is a superset of ascii.
    :return: the canonical codec name
    >>> check_charset('ASCII')
    'ascii'
    >>> check_charset('latin-1')
    'iso8859-1'
    """
    try:
        name = codecs.lookup(charset).name
    except (LookupError, TypeError) as e:
        raise ConfigurationError("unknown charset %r" % (charset,)) from e
    sample = 'Az09 \n'
    try:
        ascii_compatible = sample.encode(name) == sample.encode('ascii')
    except UnicodeError:
        ascii_compatible = False
    single_byte = all(len(c.encode(name, errors='ignore')) <= 1 for c in _wide_probe)
    if not (ascii_compatible and single_byte):
        raise ConfigurationError("charset %s is not a single byte, ascii compatible charset" % name)
    return name


class CommandEncoder:
    """
    Encodes text content into the command stream. Content is either a string or an iterable of lines,
    which are joined with line feeds.
    """

    def __init__(self, charset=DEFAULT_CHARSET):
        self.charset = check_charset(charset)

    def text(self, content) -> str:
        """ flattens the content into the text that is printed, always ending with a line feed. """
        if isinstance(content, str):
            text = content
        elif isinstance(content, (bytes, bytearray)):
            raise TypeError("content must be text, not %s" % type(content).__name__)
        else:
            lines = list(content)
            for line in lines:
                if not isinstance(line, str):
                    raise TypeError("content lines must be text, not %s" % type(line).__name__)
            text = LINE_END.join(lines)
        if not text.endswith(LINE_END):
            text += LINE_END
        return text

    def encode(self, content) -> bytes:
        """
        Encodes content as a command stream. Raises EncodingError if a character is not in the charset,
        in which case nothing is produced.

        >>> CommandEncoder().encode("Hi")
        b'\\x1b@Hi\\n\\x0c'
        """
        text = self.text(content)
        try:
            payload = text.encode(self.charset)
        except UnicodeEncodeError as e:
            raise EncodingError("character %r at position %d is not in charset %s"
                                % (e.object[e.start], e.start, self.charset)) from e
        return INIT + payload + FINISH

    def decode(self, stream: bytes) -> str:
        """
        Recovers the content from a command stream produced by encode().
        >>> CommandEncoder().decode(b'\\x1b@Hi\\n\\x0c')
        'Hi\\n'
        """
        stream = bytes(stream)
        if len(stream) < len(INIT) + len(FINISH) or not stream.startswith(INIT) or not stream.endswith(FINISH):
            raise EncodingError("not a command stream: %r" % stream[:16])
        try:
            return stream[len(INIT):-len(FINISH)].decode(self.charset)
        except UnicodeDecodeError as e:
            raise EncodingError("byte 0x%02x at position %d is not in charset %s"
                                % (e.object[e.start], e.start + len(INIT), self.charset)) from e


def encode(content, charset=DEFAULT_CHARSET) -> bytes:
    return CommandEncoder(charset).encode(content)


def decode(stream, charset=DEFAULT_CHARSET) -> str:
    return CommandEncoder(charset).decode(stream)


class PrintJob:
    """
    An encoded print job. The payload is fixed once the job is created.
    A job is submitted to one link session and is never retried automatically.
    """

    __slots__ = ('_payload',)

    def __init__(self, payload: bytes):
        self._payload = bytes(payload)

    @classmethod
    def from_content(cls, content, encoder: CommandEncoder=None):
        encoder = encoder or CommandEncoder()
        job = cls(encoder.encode(content))
        logger.debug("encoded print job of %d bytes" % job.size_bytes)
        return job

    @property
    def payload(self) -> bytes:
        return self._payload

    @property
    def size_bytes(self) -> int:
        return len(self._payload)

    def __eq__(self, other):
        return isinstance(other, PrintJob) and other._payload == self._payload

    def __hash__(self):
        return hash(self._payload)

    def __repr__(self):
        return 'PrintJob(%d bytes)' % self.size_bytes
