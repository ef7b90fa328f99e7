"""
Command line tool for printer links.

    printlink scan [--name NAME | --all] [--duration MS]
    printlink print (--ble ADDRESS | --host HOST[:PORT]) TEXT...

Printing to a bluetooth printer needs the service and characteristic uuids in the [link] section of
printlink.cfg. Scanning does not.
"""
import argparse
import asyncio
import logging
import sys

from printlink.config.config import LinkConfig
from printlink.discovery import MatchAll
from printlink.errors import LinkError
from printlink.link import LinkManager
from printlink.transport.peripheral import PeripheralTransport
from printlink.transport.socketconn import SocketTransport

logger = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(prog='printlink', description="Discover label printers and print text.")
    parser.add_argument('-v', '--verbose', action='count', default=0, help="log more detail, repeat for debug output")
    parser.add_argument('-c', '--config-dir', help="directory containing printlink.cfg")
    commands = parser.add_subparsers(dest='command')
    commands.required = True

    scan = commands.add_parser('scan', help="list bluetooth printers")
    names = scan.add_mutually_exclusive_group()
    names.add_argument('--name', help="the advertised printer name (default: the configured target name)")
    names.add_argument('--all', action='store_true', help="list every device found")
    scan.add_argument('--duration', type=int, metavar='MS', help="how long to scan")

    send = commands.add_parser('print', help="print text on a label")
    target = send.add_mutually_exclusive_group(required=True)
    target.add_argument('--ble', metavar='ADDRESS', help="bluetooth address of the printer")
    target.add_argument('--host', metavar='HOST[:PORT]', help="networked printer, port defaults to the raw print port")
    send.add_argument('text', nargs='+', help="the lines to print")
    return parser


def create_transport(config, kind):
    if kind == 'socket':
        return SocketTransport.from_config(config)
    return PeripheralTransport.from_config(config)


async def scan(config, name=None, duration=None, out=None):
    out = out or sys.stdout
    transport = create_transport(config, 'peripheral')
    async with LinkManager(transport, config, discovery_filter=name) as link:
        subscription = await link.start_discovery(scan_duration_ms=duration)
        async for candidate in subscription:
            print("%s\t%s" % (candidate.id, candidate.display_name), file=out)
        return await subscription.wait()


async def print_lines(config, kind, target, lines):
    transport = create_transport(config, kind)
    async with LinkManager(transport, config) as link:
        await link.connect(target)
        count = await link.submit_print_job(lines)
        await link.disconnect()
    return count


def main(argv=None):
    args = build_parser().parse_args(argv)
    level = (logging.WARNING, logging.INFO, logging.DEBUG)[min(args.verbose, 2)]
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        config = LinkConfig.load(directory=args.config_dir)
        if args.command == 'scan':
            outcome = asyncio.run(scan(config, MatchAll() if args.all else args.name, args.duration))
            if not outcome.candidates:
                logger.warning("no printers found")
        else:
            kind, target = ('socket', args.host) if args.host else ('peripheral', args.ble)
            count = asyncio.run(print_lines(config, kind, target, args.text))
            logger.info("sent %d bytes to %s" % (count, target))
    except LinkError as e:
        logger.error("%s failed: %s" % (args.command, e))
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
