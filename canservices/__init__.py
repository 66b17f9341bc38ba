"""CANopen communication objects: PDO, SYNC and TIME services and SDO protocol definitions."""

__version__ = "0.1.0"