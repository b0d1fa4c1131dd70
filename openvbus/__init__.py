"""Virtual Ethernet and CAN buses with capture, recording, replay, forwarding and a control daemon."""

__version__ = "0.1.0"