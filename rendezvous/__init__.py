"""rendezvous - LAN rendezvous and relay server for nearby devices."""

__version__ = "0.1.0"
