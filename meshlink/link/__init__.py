"""Single-active-link value relay over TCP.

Once the node is attached, one peer connection at a time streams integer
samples (one octet each) in both directions.
"""
