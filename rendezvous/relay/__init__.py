"""Session registry and relay for devices meeting through a rendezvous server.

Devices that share a network segment discover each other here and exchange
chat, file-transfer and peer-negotiation messages through the server until
(or instead of) connecting directly.
"""
