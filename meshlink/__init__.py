"""meshlink: join or form a low-power mesh network and relay byte values.

The package pairs a network attachment state machine (scan, form, join,
attach/detach tracking) with a single-active-link TCP relay that streams one
integer per octet to and from a peer once the node is attached.
"""

__version__ = "0.1.0"
