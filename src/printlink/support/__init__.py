"""
Support classes shared by the link and the transports: event sources, and the queued event source that
hands events from the background loop thread to the caller's thread.
"""
