"""LoWPAN network attachment: interface drivers, scanning, provisioning.

A node must be attached to a low-power mesh network (formed locally or
joined after a scan) before the link relay can open or accept a socket.
"""
