"""
Modbus Gateway

Exposes Modbus TCP slaves and their polled sources as an object tree with
persistent configuration.
"""

__version__ = "1.0.0"
