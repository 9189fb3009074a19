"""Transports: the line I/O layer beneath the control protocol."""

from duplex.transport.base import Transport
from duplex.transport.memory import InMemoryTransport
from duplex.transport.subprocess import SubprocessTransport

__all__ = ["InMemoryTransport", "SubprocessTransport", "Transport"]
