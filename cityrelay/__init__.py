"""Group-chat event relay core: validation, Schnorr signatures, abuse controls, SQLite storage and group projection."""

__version__ = "0.1.0"