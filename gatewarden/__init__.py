"""gatewarden - gateway supervisor and backup/restore engine.

Keeps a single long-lived gateway process running inside an ephemeral
sandbox, and keeps its state durable across sandbox restarts.
"""

__version__ = "0.1.0"
