"""


Printer Links

- Encoder: turns text content into the printer's command stream (init marker, payload, finish marker.)
- Transport: opens a handle to a printer endpoint and writes bytes to it
 - peripheral transport - bluetooth low energy, via a GATT characteristic write
 - socket transport - TCP to the printer's raw print port (9100)

- discovery - a transport scans for printers and posts candidates. The peripheral transport
    runs a BLE scan, the socket transport has nothing to scan: the address is given directly.
- discovery filter - a predicate deciding which candidates are of interest, by default an exact
    match on the advertised name of the printer.
- LinkManager - owns the single session to a printer. Runs discovery, connects to a chosen
    candidate, submits print jobs and disconnects. Every operation either completes or raises
    one of the errors in printlink.errors, after which the manager is back in the IDLE state.


## Threading

The link manager and the transports are asyncio based. Bleak is asyncio only, and asyncio
gives timeouts and cancellation that compose (wait_for, Task.cancel) rather than
nested callbacks.

Callers that are not running an event loop (a UI toolkit, a plain script) use LinkManagerThread,
which runs a LinkManager on a background daemon thread with its own event loop. Each operation
returns a concurrent.futures.Future. Events from the link are queued and published on the caller's
thread when it calls publish().

Only one operation touches the transport handle at a time. The manager refuses a second
discovery, connect or print job with BusyError rather than queueing it.


"""

__version__ = '0.1.0'
