"""
MQTT SQL Logger.

Subscribes to an MQTT broker and records every received message as one row
in PostgreSQL, reconnecting with backoff through broker and store outages.
"""

__version__ = "0.1.0"
