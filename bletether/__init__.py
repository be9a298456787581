"""bletether: keep paired BLE devices connected and log what they do."""

__version__ = "0.1.0"

__all__ = ["__version__"]
