"""
Wire protocol module.
Contains the frame codec, the server connection and the administrative client.
"""

from gearqueue.protocol.admin import AdminClient, split_server
from gearqueue.protocol.codec import COMMANDS, OPCODES, Frame, decode, encode
from gearqueue.protocol.connection import Connection, fetch_server_version

__all__ = [
    "COMMANDS",
    "OPCODES",
    "Frame",
    "encode",
    "decode",
    "Connection",
    "fetch_server_version",
    "AdminClient",
    "split_server",
]
