"""OrderStream — live order dashboard backend.

Order CRUD over a relational store, with every committed write pushed
to connected viewers over a WebSocket as it happens.
"""

__version__ = "0.1.0"
