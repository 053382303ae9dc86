"""
wabridge: HTTP/WebSocket API in front of a supervised, browser-backed
messaging session.
"""

__version__ = "0.1.0"
