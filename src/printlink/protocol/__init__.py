"""
The protocol package encodes print content into the command stream understood by the printer firmware.
"""
