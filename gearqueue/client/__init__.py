"""
Client module.
Contains the job submission client and the client factory.
"""

from gearqueue.client.main import Client, ClientFactory

__all__ = ["Client", "ClientFactory"]
