"""
    Filters applied to the printers found by discovery. The link manager only lists candidates
    that its filter matches, on top of any filtering the transport does while scanning.
"""

import logging

from printlink.transport.base import PrinterCandidate

logger = logging.getLogger(__name__)


class DiscoveryFilter:
    """ Decides which discovered printers are candidates. """

    def matches(self, candidate: PrinterCandidate) -> bool:
        raise NotImplementedError

    @property
    def name(self):
        """ the advertised name the transport can filter on while scanning, or None """
        return None

    def __call__(self, candidate):
        return self.matches(candidate)


class MatchAll(DiscoveryFilter):
    def matches(self, candidate):
        return True


class NameFilter(DiscoveryFilter):
    """
    Matches printers advertising exactly the configured name. No name matches every printer.
    >>> from printlink.transport.base import TransportKind
    >>> NameFilter('Brother QL-820NWBC').matches(PrinterCandidate('AA', 'Brother QL-820NWBC', TransportKind.PERIPHERAL))
    True
    >>> NameFilter('Brother QL-820NWBC').matches(PrinterCandidate('AA', 'brother ql-820nwbc', TransportKind.PERIPHERAL))
    False
    """
    def __init__(self, configured_name):
        self.configured_name = configured_name

    @property
    def name(self):
        return self.configured_name

    def matches(self, candidate):
        return self.configured_name is None or candidate.display_name == self.configured_name

    def __repr__(self):
        return 'NameFilter(%r)' % self.configured_name


class AddressFilter(DiscoveryFilter):
    """ Matches only the printers whose ids are listed. """
    def __init__(self, ids):
        self.ids = frozenset(ids)

    def matches(self, candidate):
        return candidate.id in self.ids

    def __repr__(self):
        return 'AddressFilter(%s)' % ', '.join(sorted(map(str, self.ids)))


def matches(candidate: PrinterCandidate, configured_name) -> bool:
    return NameFilter(configured_name).matches(candidate)


def as_filter(value) -> DiscoveryFilter:
    """
    Converts a printer name, None or a filter into a DiscoveryFilter.
    >>> as_filter(None)
    NameFilter(None)
    >>> as_filter('QL-820')
    NameFilter('QL-820')
    """
    if isinstance(value, DiscoveryFilter):
        return value
    if value is None or isinstance(value, str):
        return NameFilter(value)
    raise TypeError("expected a printer name or a DiscoveryFilter, not %s" % type(value).__name__)
