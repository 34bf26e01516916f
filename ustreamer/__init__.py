"""Shared-memory video frame sinks, RTP/H.264 packetizing and a sink dump tool."""

__version__ = "4.9"