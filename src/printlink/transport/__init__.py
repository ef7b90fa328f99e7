"""
A transport opens a handle to a printer endpoint and writes the command stream to it.
Concrete implementations are bluetooth low energy peripherals and TCP sockets to the raw print port.

Transports also provide discovery of candidate printers, where the medium supports it.
"""
