"""Configuration module for rendezvous."""

from rendezvous.config.schema import RendezvousConfig

__all__ = ["RendezvousConfig"]
