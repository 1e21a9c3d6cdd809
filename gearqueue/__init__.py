"""
Gearqueue

Client and worker for Gearman-style job servers: a binary wire codec,
server connections, a client that fans task sets out across servers and
a polling worker that runs registered handlers.
"""

__version__ = "1.0.0"
